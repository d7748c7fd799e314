# worker.py
"""
Standalone job worker. Run one or more next to the API:

    python worker.py

SIGINT/SIGTERM stop claiming; the job in hand finishes (or is abandoned for
the reaper after JOB_TIMEOUT_SECONDS).
"""
from __future__ import annotations
import asyncio
import logging
import signal

from tortoise import Tortoise

from scheduler import Scheduler
from services import config, jobs
from services.worker import JobWorker, default_handlers

logger = logging.getLogger("worker")


async def main() -> None:
    await Tortoise.init(config=config.TORTOISE_ORM)
    await Tortoise.generate_schemas(safe=True)

    worker = JobWorker(default_handlers())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:  # windows
            signal.signal(sig, lambda *_: worker.stop())

    sched = Scheduler()
    sched.every(config.JOB_REAP_INTERVAL_SECONDS, jobs.reap_stale)
    sched_task = asyncio.create_task(sched.run_forever())
    try:
        await worker.run_forever()
    finally:
        sched.stop()
        sched_task.cancel()
        await asyncio.gather(sched_task, return_exceptions=True)
        await Tortoise.close_connections()
        logger.info("[worker] shut down")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())
