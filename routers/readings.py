from typing import Optional

from fastapi import APIRouter, Depends, Header

from models import JobType, User
from schemas import ReadingSubmit, ReadingRead, BillRead, SubmissionRead, ReadingImport, JobRead
from deps import Account, get_account, get_current_admin_user
from services import billing, jobs

router = APIRouter(prefix="/readings", tags=["readings"])


def to_submission_read(sub: billing.Submission) -> SubmissionRead:
    return SubmissionRead(
        reading=ReadingRead.model_validate(sub.reading),
        bill=BillRead.model_validate(sub.bill) if sub.bill else None,
        job_id=sub.job.id if sub.job else None,
        notice=sub.notice,
        replayed=sub.replayed,
    )


@router.post("", response_model=SubmissionRead, status_code=201)
async def submit_reading(
    payload: ReadingSubmit,
    account: Account = Depends(get_account),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    sub = await billing.submit_reading(
        payload.connection_id,
        payload.value,
        payload.photo_ref,
        user_id=account.owner_id,
        submitted_by=account.submitted_by,
        reading_date=payload.reading_date,
        idempotency_key=idempotency_key,
    )
    return to_submission_read(sub)


@router.post("/import", response_model=JobRead, status_code=202)
async def import_readings(payload: ReadingImport, _: User = Depends(get_current_admin_user)):
    job = await jobs.enqueue(
        JobType.PROCESS_METER_READINGS,
        {"readings": [r.as_payload() for r in payload.readings], "submittedBy": "IMPORT"},
    )
    return JobRead.model_validate(job)
