# services/billing.py
"""
Bill lifecycle: reading -> consumption delta -> priced calculation ->
persisted bill -> BILL_GENERATED event.

One bill per (connection, period_to). The check and the insert run in one
transaction under a per-connection lock, and the unique constraint on
(connection, period_to) catches whatever slips past both; the resulting
IntegrityError is reported as DuplicateBill ("already done").
"""
from __future__ import annotations
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from models import (
    Bill, BillStatus, ConnectionStatus, Job, JobType, MeterReading, ServiceConnection,
)
from services import config, jobs, key_store, tariff_catalog
from services.errors import (
    BillingError, BillNotFound, ConnectionNotFound, DuplicateBill, ImplausibleReading,
    InvalidBillState, InvalidConsumption, InvalidPayment, NoPriorReading, ReadingNotFound,
    SubmissionInProgress,
)
from services.locks import connection_locks
from services.notifications import BillGeneratedEvent, NotificationSink, default_sink
from services.pricing import D, BillCalculation, price, round_money
from services.readings import latest_reading, previous_reading, validate

logger = logging.getLogger(__name__)
UTC = timezone.utc


@dataclass
class BillResult:
    bill: Bill
    calculation: BillCalculation


@dataclass
class Submission:
    reading: MeterReading
    bill: Optional[Bill] = None
    job: Optional[Job] = None
    calculation: Optional[BillCalculation] = None
    notice: Optional[str] = None
    replayed: bool = False


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(tz=UTC)


def _as_uuid(value, not_found):
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError:
        raise not_found(value)


def _aware(ts) -> datetime:
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=UTC)


def _max_delta():
    return config.MAX_READING_DELTA or None


def make_bill_no(service_type, connection_no: str, period_to: datetime) -> str:
    """PREFIX-<period end, epoch ms>-<connection no>. Same reading, same number."""
    prefix = tariff_catalog.service_rules(service_type).bill_prefix
    return f"{prefix}-{int(period_to.timestamp() * 1000)}-{connection_no}"


# ---------- pricing (shared by estimates and real bills) ----------

async def price_consumption(service_type, load_class: str, units, as_of: Optional[datetime] = None) -> BillCalculation:
    slabs = await tariff_catalog.active_slabs(service_type, load_class, as_of)
    rules = tariff_catalog.service_rules(service_type)
    return price(units, slabs, rules.surcharges, rules.minimum_units, rules.total_places)


async def estimate_bill(service_type, load_class: str, units, as_of: Optional[datetime] = None) -> BillCalculation:
    """Side-effect free quote for calculator screens."""
    return await price_consumption(service_type, load_class, units, as_of)


# ---------- generation ----------

def _period_from(reading: MeterReading, prior: Optional[MeterReading], connection: ServiceConnection) -> datetime:
    if prior is not None:
        return prior.reading_date
    if connection.connected_at is not None:
        return connection.connected_at
    return reading.reading_date - timedelta(days=config.FIRST_PERIOD_LOOKBACK_DAYS)


async def _notify(bill: Bill, notifier: Optional[NotificationSink]) -> None:
    """A failed notification never undoes the bill; it is queued for redelivery instead."""
    try:
        await (notifier or default_sink).emit(BillGeneratedEvent.for_bill(bill))
    except Exception as e:
        logger.warning("[billing] notification for %s failed, queued for retry: %s", bill.bill_no, e)
        try:
            await jobs.enqueue(JobType.SEND_NOTIFICATIONS, {"billId": str(bill.id)})
        except Exception:
            logger.exception("[billing] could not queue notification retry for %s", bill.bill_no)


async def _already_billed(connection_id, period_to: datetime) -> bool:
    return await Bill.filter(connection_id=connection_id, period_to__gte=period_to).exists()


async def _generate_locked(
    reading: MeterReading,
    connection: ServiceConnection,
    notifier: Optional[NotificationSink],
    now: datetime,
) -> BillResult:
    """Caller holds connection_locks for connection.id."""
    prior = await previous_reading(reading)
    if prior is None and connection.opening_reading is None:
        raise NoPriorReading(reading.id)

    delta = validate(connection.id, reading.value, prior, baseline=connection.opening_reading)
    if delta.units <= 0:
        raise InvalidConsumption(delta.units)

    period_to = reading.reading_date
    if await _already_billed(connection.id, period_to):
        raise DuplicateBill(connection.id, period_to)

    calc = await price_consumption(connection.service_type, connection.load_class, delta.units, as_of=now)

    bill_date = reading.reading_date
    try:
        async with in_transaction():
            # row lock on the connection (no-op on SQLite)
            await ServiceConnection.filter(id=connection.id).select_for_update().first()
            if await _already_billed(connection.id, period_to):
                raise DuplicateBill(connection.id, period_to)
            bill = await Bill.create(
                user_id=connection.user_id,
                connection_id=connection.id,
                meter_reading_id=reading.id,
                bill_no=make_bill_no(connection.service_type, connection.connection_no, period_to),
                bill_date=bill_date,
                due_date=bill_date + timedelta(days=config.BILL_GRACE_DAYS),
                period_from=_period_from(reading, prior, connection),
                period_to=period_to,
                units_consumed=delta.units,
                fixed_charge=round_money(calc.fixed_charge),
                energy_charge=round_money(calc.energy_charge),
                surcharge_amount=round_money(calc.service_surcharge),
                total_amount=calc.total_amount,
                amount_paid=D("0"),
                breakdown=calc.to_dict(),
                status=BillStatus.PENDING,
            )
    except IntegrityError:
        if await Bill.filter(connection_id=connection.id, period_to=period_to).exists():
            raise DuplicateBill(connection.id, period_to)
        raise

    logger.info(
        "[billing] %s: %s units -> %s for connection %s",
        bill.bill_no, delta.units, bill.total_amount, connection.connection_no,
    )
    await _notify(bill, notifier)
    return BillResult(bill=bill, calculation=calc)


async def generate_bill(
    meter_reading_id,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> BillResult:
    reading = await MeterReading.get_or_none(id=_as_uuid(meter_reading_id, ReadingNotFound))
    if not reading:
        raise ReadingNotFound(meter_reading_id)
    connection = await ServiceConnection.get_or_none(id=reading.connection_id)
    if not connection:
        raise ConnectionNotFound(reading.connection_id)
    async with connection_locks.hold(connection.id):
        return await _generate_locked(reading, connection, notifier, _now(now))


async def generate_pending_bills(
    connection_id=None,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Bill every reading newer than its connection's last billed period, oldest
    first. Business-rule outcomes are reported per reading; transient faults
    propagate so the calling job is retried (already billed readings are then
    skipped).
    """
    qs = ServiceConnection.filter(status=ConnectionStatus.ACTIVE)
    if connection_id is not None:
        qs = qs.filter(id=_as_uuid(connection_id, ConnectionNotFound))

    results: List[Dict[str, Any]] = []
    for conn in await qs.order_by("connection_no"):
        last_bill = await Bill.filter(connection_id=conn.id).order_by("-period_to").first()
        rq = MeterReading.filter(connection_id=conn.id)
        if last_bill:
            rq = rq.filter(reading_date__gt=last_bill.period_to)
        for reading in await rq.order_by("reading_date"):
            row: Dict[str, Any] = {"readingId": str(reading.id), "connectionId": str(conn.id)}
            try:
                res = await generate_bill(reading.id, notifier=notifier, now=now)
                row.update(status="billed", billId=str(res.bill.id))
            except (NoPriorReading, InvalidConsumption, DuplicateBill) as e:
                row.update(status="skipped", reason=e.code)
            except BillingError as e:
                logger.warning("[billing] reading %s not billed: %s", reading.id, e)
                row.update(status="failed", reason=e.code, error=str(e))
            results.append(row)

    billed = sum(1 for r in results if r["status"] == "billed")
    logger.info("[billing] pending scan: %s billed, %s other", billed, len(results) - billed)
    return results


async def enqueue_bill_generation(
    meter_reading_id=None,
    connection_id=None,
    scheduled_at: Optional[datetime] = None,
) -> Job:
    """Bulk/admin path. Neither id -> scan all pending readings."""
    payload: Dict[str, Any] = {}
    if meter_reading_id is not None:
        reading = await MeterReading.get_or_none(id=_as_uuid(meter_reading_id, ReadingNotFound))
        if not reading:
            raise ReadingNotFound(meter_reading_id)
        payload["meterReadingId"] = str(reading.id)
        payload["connectionId"] = str(reading.connection_id)
    elif connection_id is not None:
        cid = _as_uuid(connection_id, ConnectionNotFound)
        if not await ServiceConnection.exists(id=cid):
            raise ConnectionNotFound(connection_id)
        payload["connectionId"] = str(cid)
    return await jobs.enqueue(JobType.GENERATE_BILLS, payload, scheduled_at=scheduled_at)


# ---------- submissions ----------

async def _active_connection(connection_id, user_id=None) -> ServiceConnection:
    qs = ServiceConnection.filter(
        id=_as_uuid(connection_id, ConnectionNotFound), status=ConnectionStatus.ACTIVE
    )
    if user_id is not None:
        qs = qs.filter(user_id=user_id)
    conn = await qs.first()
    if not conn:
        raise ConnectionNotFound(connection_id)
    return conn


def _check_order(prior: Optional[MeterReading], reading_date: datetime) -> None:
    if prior is not None and reading_date <= prior.reading_date:
        raise ImplausibleReading(
            f"Reading date {reading_date.isoformat()} must be after the last reading "
            f"({prior.reading_date.isoformat()})"
        )


async def _record_reading(connection: ServiceConnection, value, reading_date: datetime,
                          submitted_by: str, photo_ref: Optional[str]) -> MeterReading:
    async with in_transaction():
        reading = await MeterReading.create(
            connection_id=connection.id,
            value=value,
            reading_date=reading_date,
            submitted_by=submitted_by,
            photo_ref=photo_ref,
        )
        await ServiceConnection.filter(id=connection.id).update(
            last_reading=value, last_reading_date=reading_date
        )
    return reading


async def _replay(key: str, now: datetime) -> Submission:
    stored = await key_store.get(key, now)
    if not stored or "readingId" not in stored:
        raise SubmissionInProgress("This submission is still being processed")
    reading = await MeterReading.get(id=stored["readingId"])
    bill = await Bill.get_or_none(id=stored["billId"]) if stored.get("billId") else None
    job = await Job.get_or_none(id=stored["jobId"]) if stored.get("jobId") else None
    return Submission(reading=reading, bill=bill, job=job, notice=stored.get("notice"), replayed=True)


async def submit_reading(
    connection_id,
    value,
    photo_ref: Optional[str] = None,
    *,
    user_id=None,
    submitted_by: str = "CITIZEN",
    reading_date: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """
    Citizen path: validate, store the reading, then bill inline.
    A non-monotonic or implausible reading stores nothing. Transient failures
    while billing leave the reading in place and queue a GENERATE_BILLS job.
    """
    now = _now(now)
    key = f"submit:{user_id or '-'}:{idempotency_key}" if idempotency_key else None
    if key and not await key_store.add(key, {}, config.IDEMPOTENCY_TTL_SECONDS, now):
        return await _replay(key, now)

    try:
        submission = await _submit(connection_id, value, photo_ref, user_id, submitted_by,
                                   _aware(reading_date) if reading_date else now, notifier, now)
    except Exception:
        if key:
            await key_store.delete(key)
        raise

    if key:
        await key_store.put(key, {
            "readingId": str(submission.reading.id),
            "billId": str(submission.bill.id) if submission.bill else None,
            "jobId": str(submission.job.id) if submission.job else None,
            "notice": submission.notice,
        }, config.IDEMPOTENCY_TTL_SECONDS, now)
    return submission


async def _submit(connection_id, value, photo_ref, user_id, submitted_by, reading_date,
                  notifier, now) -> Submission:
    connection = await _active_connection(connection_id, user_id)
    async with connection_locks.hold(connection.id):
        prior = await latest_reading(connection.id)
        _check_order(prior, reading_date)
        delta = validate(
            connection.id, value, prior,
            baseline=connection.opening_reading, max_delta=_max_delta(),
        )
        billable = not delta.is_baseline and delta.units > 0

        if billable and config.SYNC_BILLING:
            # tariff misconfiguration surfaces before anything is stored
            await tariff_catalog.active_slabs(connection.service_type, connection.load_class, now)

        reading = await _record_reading(connection, delta.current_value, reading_date, submitted_by, photo_ref)
        submission = Submission(reading=reading)

        if not billable:
            logger.info("[billing] reading %s on %s recorded without a bill (%s units%s)",
                        reading.id, connection.connection_no, delta.units,
                        ", baseline" if delta.is_baseline else "")
            return submission

        if not config.SYNC_BILLING:
            submission.job = await jobs.enqueue(JobType.GENERATE_BILLS, {
                "connectionId": str(connection.id), "meterReadingId": str(reading.id),
            })
            return submission

        try:
            result = await _generate_locked(reading, connection, notifier, now)
            submission.bill, submission.calculation = result.bill, result.calculation
        except BillingError as e:
            logger.info("[billing] reading %s stored, not billed: %s", reading.id, e)
            submission.notice = str(e)
        except Exception:
            logger.exception("[billing] inline billing failed for reading %s, deferring to worker", reading.id)
            submission.job = await jobs.enqueue(JobType.GENERATE_BILLS, {
                "connectionId": str(connection.id), "meterReadingId": str(reading.id),
            })
        return submission


async def import_readings(rows: Iterable[Dict[str, Any]], submitted_by: str = "IMPORT") -> Dict[str, Any]:
    """
    Bulk import: rows of {connectionId, value, readingDate}. Each connection's
    rows are validated in date order; rejected rows are reported and skipped.
    One GENERATE_BILLS job is queued per connection that gained readings.
    """
    by_conn: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for r in rows:
        by_conn[str(r["connectionId"])].append(r)

    imported: List[str] = []
    rejected: List[Dict[str, Any]] = []
    queued: List[str] = []

    for cid, items in by_conn.items():
        try:
            connection = await _active_connection(cid)
        except ConnectionNotFound as e:
            rejected.extend({"connectionId": cid, "value": str(i.get("value")), "error": str(e)} for i in items)
            continue

        added = 0
        async with connection_locks.hold(connection.id):
            prior = await latest_reading(connection.id)
            baseline = connection.opening_reading
            for item in sorted(items, key=lambda i: _aware(i["readingDate"])):
                when = _aware(item["readingDate"])
                try:
                    _check_order(prior, when)
                    delta = validate(connection.id, item["value"], prior, baseline=baseline, max_delta=_max_delta())
                except BillingError as e:
                    rejected.append({"connectionId": cid, "value": str(item.get("value")), "error": str(e)})
                    continue
                prior = await _record_reading(connection, delta.current_value, when, submitted_by, item.get("photoRef"))
                imported.append(str(prior.id))
                added += 1

        if added:
            job = await jobs.enqueue(JobType.GENERATE_BILLS, {"connectionId": str(connection.id)})
            queued.append(str(job.id))

    logger.info("[billing] import: %s readings stored, %s rejected", len(imported), len(rejected))
    return {"imported": imported, "rejected": rejected, "jobs": queued}


# ---------- bill state ----------

def effective_status(bill: Bill, now: Optional[datetime] = None) -> BillStatus:
    """PENDING past its due date reads as OVERDUE; nothing writes OVERDUE on a timer."""
    if bill.status == BillStatus.PENDING and _now(now) > bill.due_date:
        return BillStatus.OVERDUE
    return BillStatus(bill.status)


async def get_bill(bill_id) -> Bill:
    bill = await Bill.get_or_none(id=_as_uuid(bill_id, BillNotFound))
    if not bill:
        raise BillNotFound(bill_id)
    return bill


async def confirm_payment(bill_id, amount, paid_at: Optional[datetime] = None) -> Bill:
    """Payment collaborator callback. Partial payments accumulate until the total is met."""
    amount = D(amount)
    if amount <= 0:
        raise InvalidPayment(f"Payment amount must be positive, got {amount}")
    bid = _as_uuid(bill_id, BillNotFound)
    async with in_transaction():
        bill = await Bill.filter(id=bid).select_for_update().first()
        if not bill:
            raise BillNotFound(bill_id)
        if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
            raise InvalidBillState(f"Bill {bill.bill_no} is {bill.status.value}")
        bill.amount_paid = round_money(D(bill.amount_paid) + amount)
        if bill.amount_paid >= bill.total_amount:
            bill.status = BillStatus.PAID
            bill.paid_at = _now(paid_at)
        await bill.save()
    logger.info("[billing] payment of %s on %s, status %s", amount, bill.bill_no, bill.status.value)
    return bill


async def cancel_bill(bill_id, now: Optional[datetime] = None) -> Bill:
    bill = await get_bill(bill_id)
    status = effective_status(bill, now)
    if status != BillStatus.PENDING:
        raise InvalidBillState(f"Only pending bills can be cancelled; {bill.bill_no} is {status.value}")
    bill.status = BillStatus.CANCELLED
    await bill.save()
    logger.info("[billing] %s cancelled", bill.bill_no)
    return bill
