from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Body, Depends

from models import Job, JobStatus
from schemas import EnqueueRequest, JobEnqueue, JobRead
from api_utils import RAListParams, parse_sort, apply_filter_map, paginate_and_respond, respond_item
from deps import get_current_admin_user
from services import billing, jobs

router = APIRouter(prefix="/admin/jobs", tags=["admin-jobs"], dependencies=[Depends(get_current_admin_user)])

def to_job_read(j: Job) -> JobRead:
    return JobRead.model_validate(j)


@router.get("", response_model=list[JobRead])
async def list_jobs(params: RAListParams = Depends()):
    qs = Job.all()
    fmap = {
        "status": lambda q, v: q.filter(status=JobStatus(v)),
        "type": lambda q, v: q.filter(type=str(v)),
    }
    qs = apply_filter_map(qs, params.filters, fmap)
    order = parse_sort(params.sort, ["type", "status", "scheduled_at", "attempts", "created_at", "completed_at"])
    return await paginate_and_respond(qs, params.skip, params.limit, order, to_job_read)


@router.get("/{job_id}", response_model=JobRead)
async def get_job(job_id: str):
    return respond_item(await jobs.get_job(job_id), to_job_read)


@router.post("/generate-bills", response_model=JobRead, status_code=202)
async def generate_bills(payload: Optional[EnqueueRequest] = Body(None)):
    """No ids: scan every active connection for unbilled readings."""
    payload = payload or EnqueueRequest()
    job = await billing.enqueue_bill_generation(
        meter_reading_id=payload.meter_reading_id,
        connection_id=payload.connection_id,
        scheduled_at=payload.scheduled_at,
    )
    return respond_item(job, to_job_read, status_code=202)


@router.post("", response_model=JobRead, status_code=202)
async def enqueue(payload: JobEnqueue):
    job = await jobs.enqueue(payload.type, payload.payload, scheduled_at=payload.scheduled_at)
    return respond_item(job, to_job_read, status_code=202)


@router.post("/reap")
async def reap(timeout_seconds: Optional[float] = Body(None, embed=True)):
    return {"requeued_or_failed": await jobs.reap_stale(timeout_seconds)}
