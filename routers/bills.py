from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from models import Bill, BillStatus, User
from schemas import BillRead, BillCalculationRead, EstimateRequest, PaymentConfirm
from api_utils import RAListParams, parse_sort, apply_filter_map, paginate_and_respond, respond_item
from deps import Account, get_account, get_current_admin_user
from services import billing

router = APIRouter(prefix="/bills", tags=["bills"])


def to_bill_read(bill: Bill) -> BillRead:
    out = BillRead.model_validate(bill)
    out.status = billing.effective_status(bill)
    return out


def _status_filter(qs, value):
    # OVERDUE is derived on read from PENDING + due_date
    if value == BillStatus.OVERDUE.value:
        return qs.filter(status=BillStatus.PENDING, due_date__lt=datetime.now(tz=timezone.utc))
    if value in {s.value for s in BillStatus}:
        return qs.filter(status=BillStatus(value))
    return qs.filter(id__in=[])


@router.post("/estimate", response_model=BillCalculationRead)
async def estimate(payload: EstimateRequest):
    calc = await billing.estimate_bill(payload.service_type, payload.load_class, payload.units)
    return BillCalculationRead.from_calc(calc)


@router.get("", response_model=list[BillRead])
async def list_bills(params: RAListParams = Depends(), account: Account = Depends(get_account)):
    qs = account.scope(Bill.all())
    fmap = {
        "connection_id": lambda q, v: q.filter(connection_id=v),
        "bill_no": lambda q, v: q.filter(bill_no__icontains=str(v)),
        "status": _status_filter,
    }
    qs = apply_filter_map(qs, params.filters, fmap)
    order = parse_sort(params.sort, ["bill_no", "bill_date", "due_date", "period_to", "total_amount", "status", "created_at"])
    return await paginate_and_respond(qs, params.skip, params.limit, order, to_bill_read)


@router.get("/{bill_id}", response_model=BillRead)
async def get_bill(bill_id: str, account: Account = Depends(get_account)):
    bill = await billing.get_bill(bill_id)
    if not account.owns(bill):
        raise HTTPException(404, "Bill not found")
    return respond_item(bill, to_bill_read)


@router.post("/{bill_id}/payment", response_model=BillRead)
async def confirm_payment(bill_id: str, payload: PaymentConfirm, _: User = Depends(get_current_admin_user)):
    bill = await billing.confirm_payment(bill_id, payload.amount, payload.paid_at)
    return respond_item(bill, to_bill_read)


@router.post("/{bill_id}/cancel", response_model=BillRead)
async def cancel_bill(bill_id: str, _: User = Depends(get_current_admin_user)):
    bill = await billing.cancel_bill(bill_id)
    return respond_item(bill, to_bill_read)
