# services/worker.py
"""
Polling job worker.

    worker = JobWorker(default_handlers())
    await worker.run_forever()      # until worker.stop()

Handler outcome -> queue transition:
    returns            -> complete
    DuplicateBill      -> complete (work was already done)
    BillingError       -> fail, not retried
    anything else      -> fail, retried with backoff until attempts run out
"""
from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from models import Job, JobType
from services import billing, config, jobs, notifications
from services.errors import BillingError, DuplicateBill

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class JobWorker:
    def __init__(
        self,
        handlers: Dict[str, Handler],
        poll_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.handlers = {(k.value if isinstance(k, JobType) else k): v for k, v in handlers.items()}
        self.poll_seconds = config.JOB_POLL_SECONDS if poll_seconds is None else poll_seconds
        self.timeout_seconds = config.JOB_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Stop claiming. A job already running is allowed to finish."""
        self._stopping.set()

    async def run_once(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Claim and run at most one job. Returns the job as it ended, or None if nothing was due."""
        job = await jobs.claim_next(now)
        if job is None:
            return None

        handler = self.handlers.get(job.type)
        if handler is None:
            logger.error("[worker] no handler for job type %s (%s)", job.type, job.id)
            return await jobs.fail(job.id, f"Unknown job type: {job.type}", retryable=False)

        logger.info("[worker] running %s %s (attempt %s/%s)", job.type, job.id, job.attempts, job.max_attempts)
        try:
            result = await asyncio.wait_for(handler(job.payload or {}), timeout=self.timeout_seconds)
        except DuplicateBill as e:
            logger.info("[worker] %s %s already done: %s", job.type, job.id, e)
            await jobs.complete(job.id)
        except BillingError as e:
            await jobs.fail(job.id, f"{e.code}: {e}", retryable=False)
        except asyncio.TimeoutError:
            await jobs.fail(job.id, f"timed out after {self.timeout_seconds}s")
        except Exception as e:
            logger.exception("[worker] %s %s raised", job.type, job.id)
            await jobs.fail(job.id, f"{type(e).__name__}: {e}")
        else:
            logger.info("[worker] %s %s done: %s", job.type, job.id, result)
            await jobs.complete(job.id)
        return await Job.get(id=job.id)

    async def run_forever(self) -> None:
        logger.info("[worker] started (poll every %ss, handlers=%s)", self.poll_seconds, sorted(self.handlers))
        while not self.stopping:
            try:
                job = await self.run_once()
            except Exception:
                # queue itself unreachable; back off and try again
                logger.exception("[worker] poll failed")
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("[worker] stopped")


# ---------- handlers ----------

async def handle_generate_bills(payload: Dict[str, Any]):
    if payload.get("meterReadingId"):
        res = await billing.generate_bill(payload["meterReadingId"])
        return {"billId": str(res.bill.id), "billNo": res.bill.bill_no}
    results = await billing.generate_pending_bills(payload.get("connectionId"))
    return {"billed": sum(1 for r in results if r["status"] == "billed"), "seen": len(results)}


async def handle_send_notifications(payload: Dict[str, Any]):
    await notifications.redeliver(payload["billId"])
    return {"billId": payload["billId"]}


async def handle_process_meter_readings(payload: Dict[str, Any]):
    summary = await billing.import_readings(
        payload.get("readings") or [], submitted_by=payload.get("submittedBy") or "IMPORT"
    )
    return {k: len(v) for k, v in summary.items()}


def default_handlers() -> Dict[str, Handler]:
    return {
        JobType.GENERATE_BILLS.value: handle_generate_bills,
        JobType.SEND_NOTIFICATIONS.value: handle_send_notifications,
        JobType.PROCESS_METER_READINGS.value: handle_process_meter_readings,
    }
