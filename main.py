# main.py (lifespan-based)
from __future__ import annotations

import asyncio, logging, contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from tortoise import Tortoise

from routers import auth, readings, bills, tariffs, admin_tasks

# Background pieces
from scheduler import Scheduler
from services import config, jobs, key_store
from services.errors import BillingError
from services.seeder import seed_if_empty
from services.worker import JobWorker, default_handlers

logger = logging.getLogger("uvicorn")


# ----- scheduled jobs -----
async def _job_reap_stale():
    return await jobs.reap_stale()

async def _job_purge_keys():
    return await key_store.purge_expired()


# ----- lifespan -----
@asynccontextmanager
async def lifespan(app: FastAPI):
    # 1) DB init
    await Tortoise.init(config=config.TORTOISE_ORM)
    await Tortoise.generate_schemas()

    # 2) Seeds
    await seed_if_empty(logger=logger.info)

    # 3) Job worker (separate processes can run worker.py against the same DB)
    worker = None
    worker_task = None
    if config.RUN_WORKER_IN_APP:
        worker = JobWorker(default_handlers())
        worker_task = asyncio.create_task(worker.run_forever())
    app.state.worker = worker

    # 4) Scheduler
    sched = Scheduler()
    app.state.scheduler = sched
    sched.every(config.JOB_REAP_INTERVAL_SECONDS, _job_reap_stale)
    sched.every(3600, _job_purge_keys)
    sched_task = asyncio.create_task(sched.run_forever())
    try:
        yield
    finally:
        sched.stop()
        if not sched_task.done():
            sched_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sched_task
        if worker_task is not None:
            worker.stop()
            try:
                await asyncio.wait_for(worker_task, timeout=config.JOB_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                # in-flight job is left PROCESSING for the reaper
                logger.warning("[worker] did not stop in time; abandoning in-flight job")
        await Tortoise.close_connections()


# ----- app & routers -----
app = FastAPI(lifespan=lifespan, title="Utility Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "X-Total-Count"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.http_status >= 500:
        logger.error("[billing] %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content={"code": exc.code, "detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("[api] %s %s failed", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"code": "INTERNAL", "detail": "Something went wrong on our side. Please retry later."},
    )


app.include_router(auth.router)
app.include_router(readings.router)
app.include_router(bills.router)
app.include_router(tariffs.router)
app.include_router(admin_tasks.router)

for route in app.routes:
    if isinstance(route, APIRoute):
        logger.debug("%s -> %s", list(route.methods), route.path)
