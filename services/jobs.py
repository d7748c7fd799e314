# services/jobs.py
"""
Durable job queue on the jobs table.

    PENDING -> PROCESSING -> COMPLETED
                          -> PENDING   (retry, scheduled_at pushed back)
                          -> FAILED    (attempts exhausted or non-retryable)

Every transition is a conditional UPDATE guarded on the row's current status
(and attempt count when claiming), so two workers polling the same table can
never both own a job.
"""
from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from models import Job, JobStatus, JobType
from services import config
from services.errors import JobNotFound

logger = logging.getLogger(__name__)
UTC = timezone.utc

CLAIM_BATCH = 10
ERROR_MAX_CHARS = 2000


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(tz=UTC)


def backoff_seconds(attempts: int) -> float:
    """Delay before the next attempt, doubling per attempt already made."""
    if attempts <= 0:
        return 0.0
    return min(config.JOB_BACKOFF_BASE_SECONDS * (2 ** (attempts - 1)), config.JOB_BACKOFF_MAX_SECONDS)


async def enqueue(
    type: str,
    payload: Optional[Dict[str, Any]] = None,
    scheduled_at: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Job:
    job = await Job.create(
        type=type.value if isinstance(type, JobType) else str(type),
        payload=payload or {},
        scheduled_at=scheduled_at or datetime.now(tz=UTC),
        max_attempts=max_attempts or config.JOB_MAX_ATTEMPTS,
    )
    logger.info("[jobs] enqueued %s %s payload=%s", job.type, job.id, job.payload)
    return job


async def claim_next(now: Optional[datetime] = None) -> Optional[Job]:
    now = _now(now)
    candidates = await (
        Job.filter(status=JobStatus.PENDING, scheduled_at__lte=now)
        .order_by("scheduled_at", "created_at")
        .limit(CLAIM_BATCH)
    )
    for job in candidates:
        if job.attempts >= job.max_attempts:
            continue
        won = await Job.filter(id=job.id, status=JobStatus.PENDING, attempts=job.attempts).update(
            status=JobStatus.PROCESSING,
            attempts=job.attempts + 1,
            started_at=now,
            claimed_at=now,
        )
        if won:
            return await Job.get(id=job.id)
    return None


async def complete(job_id, now: Optional[datetime] = None) -> bool:
    done = await Job.filter(id=job_id, status=JobStatus.PROCESSING).update(
        status=JobStatus.COMPLETED,
        completed_at=_now(now),
    )
    if not done:
        logger.warning("[jobs] complete(%s) ignored: job is no longer PROCESSING", job_id)
    return bool(done)


async def fail(job_id, error: str, *, retryable: bool = True, now: Optional[datetime] = None) -> Job:
    now = _now(now)
    job = await Job.get_or_none(id=job_id)
    if not job:
        raise JobNotFound(job_id)

    error = (error or "")[:ERROR_MAX_CHARS]
    guard = Job.filter(id=job.id, status=JobStatus.PROCESSING, attempts=job.attempts)

    if retryable and job.attempts < job.max_attempts:
        delay = backoff_seconds(job.attempts)
        changed = await guard.update(
            status=JobStatus.PENDING,
            error=error,
            scheduled_at=now + timedelta(seconds=delay),
        )
        if changed:
            logger.warning(
                "[jobs] %s %s failed (attempt %s/%s), retry in %ss: %s",
                job.type, job.id, job.attempts, job.max_attempts, delay, error,
            )
    else:
        changed = await guard.update(status=JobStatus.FAILED, error=error, completed_at=now)
        if changed:
            logger.error(
                "[jobs] %s %s FAILED after %s attempt(s): %s", job.type, job.id, job.attempts, error
            )
    if not changed:
        logger.warning("[jobs] fail(%s) ignored: job is no longer PROCESSING", job_id)
    return await Job.get(id=job.id)


async def reap_stale(timeout_seconds: Optional[float] = None, now: Optional[datetime] = None) -> int:
    """Requeue PROCESSING jobs whose worker went quiet; fail them if out of attempts."""
    now = _now(now)
    timeout = config.JOB_STALE_SECONDS if timeout_seconds is None else timeout_seconds
    cutoff = now - timedelta(seconds=timeout)
    stale = await Job.filter(status=JobStatus.PROCESSING, claimed_at__lt=cutoff)

    reaped = 0
    for job in stale:
        guard = Job.filter(id=job.id, status=JobStatus.PROCESSING, attempts=job.attempts)
        note = f"abandoned: no result {int(timeout)}s after claim"
        if job.attempts >= job.max_attempts:
            changed = await guard.update(status=JobStatus.FAILED, error=note, completed_at=now)
        else:
            changed = await guard.update(status=JobStatus.PENDING, error=note, scheduled_at=now)
        reaped += changed
    if reaped:
        logger.warning("[jobs] reaped %s stale job(s)", reaped)
    return reaped


async def get_job(job_id) -> Job:
    try:
        job = await Job.get_or_none(id=uuid.UUID(str(job_id)))
    except ValueError:
        raise JobNotFound(job_id)
    if not job:
        raise JobNotFound(job_id)
    return job
