"""Tests for the bill lifecycle: submission, generation, idempotency, payment."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import T0, make_connection
from models import (
    Bill, BillStatus, Job, JobStatus, JobType, MeterReading, Notification, ServiceConnection, ServiceType,
    TariffSlab,
)
from services import billing, config
from services.errors import (
    ConnectionNotFound, DuplicateBill, ImplausibleReading, InvalidBillState, InvalidConsumption,
    InvalidPayment, NoPriorReading, NoTariffFound, NonMonotonicReading, ReadingNotFound,
)
from services.notifications import NotificationSink

DAY = timedelta(days=1)


class FailingSink(NotificationSink):
    async def emit(self, event):
        raise ConnectionError("push gateway down")


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)


async def _reading(conn, value, when):
    return await MeterReading.create(connection=conn, value=value, reading_date=when)


@pytest.fixture
def opening(citizen, tariffs):
    async def _make(service_type=ServiceType.ELECTRICITY, load_class="RESIDENTIAL", value="1000", **kw):
        return await make_connection(citizen, service_type, load_class, opening_reading=Decimal(value), **kw)
    return _make


class TestSubmitReading:
    @pytest.mark.asyncio
    async def test_bills_inline(self, citizen, opening):
        conn = await opening(connected_at=T0 - 40 * DAY)
        sub = await billing.submit_reading(conn.id, "1300", user_id=citizen.id, reading_date=T0, now=T0)

        assert sub.bill is not None and sub.job is None
        bill = sub.bill
        assert bill.total_amount == Decimal("2061.00")
        assert bill.units_consumed == Decimal("300")
        assert bill.energy_charge == Decimal("1794.00")
        assert bill.surcharge_amount == Decimal("207.00")
        assert bill.fixed_charge == Decimal("60.00")
        assert bill.period_from == T0 - 40 * DAY
        assert bill.period_to == T0
        assert bill.bill_date == T0
        assert bill.due_date == T0 + 15 * DAY
        assert bill.status == BillStatus.PENDING
        assert bill.bill_no == f"ELEC-{int(T0.timestamp() * 1000)}-{conn.connection_no}"
        assert bill.breakdown["slab_breakdown"][2]["slab"] == "240-∞"

        conn = await ServiceConnection.get(id=conn.id)
        assert conn.last_reading == Decimal("1300")
        assert await Notification.filter(user_id=citizen.id, kind="BILL_GENERATED").count() == 1

    @pytest.mark.asyncio
    async def test_first_period_uses_lookback_without_connection_date(self, opening):
        config.FIRST_PERIOD_LOOKBACK_DAYS = 45
        conn = await opening()
        sub = await billing.submit_reading(conn.id, "1010", reading_date=T0, now=T0)
        assert sub.bill.period_from == T0 - 45 * DAY

    @pytest.mark.asyncio
    async def test_second_period_starts_at_previous_reading(self, opening):
        conn = await opening()
        await billing.submit_reading(conn.id, "1100", reading_date=T0, now=T0)
        sub = await billing.submit_reading(conn.id, "1150", reading_date=T0 + 30 * DAY, now=T0 + 30 * DAY)
        assert sub.bill.period_from == T0
        assert sub.bill.units_consumed == Decimal("50")

    @pytest.mark.asyncio
    async def test_gas_floor_and_whole_rupee_total(self, opening):
        conn = await opening(ServiceType.GAS, "DOMESTIC", value="100")
        sub = await billing.submit_reading(conn.id, "103", reading_date=T0, now=T0)
        assert sub.bill.units_consumed == Decimal("3")
        assert sub.bill.total_amount == Decimal("101")
        assert sub.bill.bill_no.startswith("GAS-")

    @pytest.mark.asyncio
    async def test_first_reading_without_baseline_records_only(self, electricity):
        sub = await billing.submit_reading(electricity.id, "420", reading_date=T0, now=T0)
        assert sub.bill is None and sub.job is None
        assert await MeterReading.filter(connection_id=electricity.id).count() == 1
        assert await Bill.all().count() == 0

    @pytest.mark.asyncio
    async def test_non_monotonic_leaves_no_trace(self, electricity):
        await billing.submit_reading(electricity.id, "150", reading_date=T0, now=T0)
        with pytest.raises(NonMonotonicReading) as exc:
            await billing.submit_reading(electricity.id, "100", reading_date=T0 + DAY, now=T0 + DAY)
        assert "cannot be less than previous reading" in str(exc.value)
        assert await MeterReading.filter(connection_id=electricity.id).count() == 1
        assert await Bill.all().count() == 0
        assert await Job.all().count() == 0

    @pytest.mark.asyncio
    async def test_zero_consumption_recorded_not_billed(self, opening):
        conn = await opening()
        sub = await billing.submit_reading(conn.id, "1000", reading_date=T0, now=T0)
        assert sub.bill is None and sub.job is None
        with pytest.raises(InvalidConsumption):
            await billing.generate_bill(sub.reading.id, now=T0)

    @pytest.mark.asyncio
    async def test_reading_must_be_newer(self, opening):
        conn = await opening()
        await billing.submit_reading(conn.id, "1100", reading_date=T0, now=T0)
        with pytest.raises(ImplausibleReading):
            await billing.submit_reading(conn.id, "1200", reading_date=T0, now=T0)

    @pytest.mark.asyncio
    async def test_delta_ceiling(self, opening):
        config.MAX_READING_DELTA = "500"
        conn = await opening()
        with pytest.raises(ImplausibleReading):
            await billing.submit_reading(conn.id, "1600", reading_date=T0, now=T0)
        assert await MeterReading.all().count() == 0

    @pytest.mark.asyncio
    async def test_missing_tariff_stores_nothing(self, opening):
        conn = await opening(ServiceType.MUNICIPAL, "RESIDENTIAL")
        with pytest.raises(NoTariffFound):
            await billing.submit_reading(conn.id, "1100", reading_date=T0, now=T0)
        assert await MeterReading.all().count() == 0
        assert await Job.all().count() == 0

    @pytest.mark.asyncio
    async def test_other_users_connection(self, opening):
        conn = await opening()
        with pytest.raises(ConnectionNotFound):
            await billing.submit_reading(conn.id, "1100", user_id="00000000-0000-0000-0000-000000000000", now=T0)

    @pytest.mark.asyncio
    async def test_transient_failure_falls_back_to_job(self, opening, monkeypatch):
        async def boom(*args, **kwargs):
            raise TimeoutError("database went away")

        monkeypatch.setattr(billing, "price_consumption", boom)
        conn = await opening()
        sub = await billing.submit_reading(conn.id, "1100", reading_date=T0, now=T0)

        assert sub.bill is None
        assert sub.job is not None
        assert sub.job.type == JobType.GENERATE_BILLS.value
        assert sub.job.payload["meterReadingId"] == str(sub.reading.id)
        assert await MeterReading.all().count() == 1

    @pytest.mark.asyncio
    async def test_async_mode_only_enqueues(self, opening):
        config.SYNC_BILLING = False
        conn = await opening()
        sub = await billing.submit_reading(conn.id, "1100", reading_date=T0, now=T0)
        assert sub.bill is None
        assert sub.job.status == JobStatus.PENDING
        assert await Bill.all().count() == 0

    @pytest.mark.asyncio
    async def test_idempotency_key_replays(self, citizen, opening):
        conn = await opening()
        first = await billing.submit_reading(
            conn.id, "1100", user_id=citizen.id, reading_date=T0, idempotency_key="k-1", now=T0,
        )
        again = await billing.submit_reading(
            conn.id, "1100", user_id=citizen.id, reading_date=T0, idempotency_key="k-1", now=T0 + timedelta(seconds=5),
        )
        assert again.replayed
        assert again.reading.id == first.reading.id
        assert again.bill.id == first.bill.id
        assert await MeterReading.all().count() == 1

    @pytest.mark.asyncio
    async def test_failed_submission_frees_the_key(self, citizen, electricity):
        await billing.submit_reading(electricity.id, "150", reading_date=T0, now=T0)
        with pytest.raises(NonMonotonicReading):
            await billing.submit_reading(electricity.id, "100", user_id=citizen.id, reading_date=T0 + DAY,
                                         idempotency_key="k-2", now=T0 + DAY)
        sub = await billing.submit_reading(electricity.id, "160", user_id=citizen.id, reading_date=T0 + DAY,
                                           idempotency_key="k-2", now=T0 + DAY)
        assert not sub.replayed
        assert sub.bill is not None


class TestGenerateBill:
    @pytest.mark.asyncio
    async def test_generate_twice_is_duplicate(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)

        first = await billing.generate_bill(reading.id, now=T0)
        with pytest.raises(DuplicateBill):
            await billing.generate_bill(reading.id, now=T0)
        assert first.calculation.total_amount == Decimal("2061.00")
        assert await Bill.filter(connection_id=conn.id).count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_generation_makes_one_bill(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)

        results = await asyncio.gather(
            billing.generate_bill(reading.id, now=T0),
            billing.generate_bill(reading.id, now=T0),
            return_exceptions=True,
        )
        assert sum(isinstance(r, billing.BillResult) for r in results) == 1
        assert sum(isinstance(r, DuplicateBill) for r in results) == 1
        assert await Bill.filter(connection_id=conn.id).count() == 1

    @pytest.mark.asyncio
    async def test_unknown_reading(self, db):
        with pytest.raises(ReadingNotFound):
            await billing.generate_bill("not-a-uuid")
        with pytest.raises(ReadingNotFound):
            await billing.generate_bill("6f1c1c2e-6a43-4c1e-9b59-8a2d2bb2a001")

    @pytest.mark.asyncio
    async def test_no_prior_reading(self, electricity):
        reading = await _reading(electricity, 500, T0)
        with pytest.raises(NoPriorReading):
            await billing.generate_bill(reading.id, now=T0)

    @pytest.mark.asyncio
    async def test_rerun_after_tariff_retired_is_duplicate(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)
        await billing.generate_bill(reading.id, now=T0)

        await TariffSlab.filter(service_type=ServiceType.ELECTRICITY, load_class="RESIDENTIAL").update(active=False)
        with pytest.raises(DuplicateBill):
            await billing.generate_bill(reading.id, now=T0)

    @pytest.mark.asyncio
    async def test_missing_connection(self, opening, monkeypatch):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)

        async def _gone(**kwargs):
            return None

        monkeypatch.setattr(ServiceConnection, "get_or_none", _gone)
        with pytest.raises(ConnectionNotFound):
            await billing.generate_bill(reading.id, now=T0)
        assert await Bill.all().count() == 0

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_bill(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)

        res = await billing.generate_bill(reading.id, notifier=FailingSink(), now=T0)
        assert await Bill.filter(id=res.bill.id).exists()
        retry = await Job.get(type=JobType.SEND_NOTIFICATIONS.value)
        assert retry.payload == {"billId": str(res.bill.id)}

    @pytest.mark.asyncio
    async def test_event_carries_bill_and_total(self, citizen, opening):
        conn = await opening()
        reading = await _reading(conn, 1300, T0)
        sink = RecordingSink()

        res = await billing.generate_bill(reading.id, notifier=sink, now=T0)
        (event,) = sink.events
        assert event.kind == "BILL_GENERATED"
        assert event.user_id == citizen.id
        assert event.bill_id == res.bill.id
        assert event.total_amount == Decimal("2061.00")
        assert event.due_date == T0 + 15 * DAY

    @pytest.mark.asyncio
    async def test_estimate_matches_real_bill(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1287.5, T0)
        res = await billing.generate_bill(reading.id, now=T0)
        quote = await billing.estimate_bill(ServiceType.ELECTRICITY, "RESIDENTIAL", "287.5", as_of=T0)
        assert quote == res.calculation


class TestPendingScan:
    @pytest.mark.asyncio
    async def test_bills_oldest_first_and_skips_baseline(self, citizen, tariffs):
        a = await make_connection(citizen, connection_no="A-0001")
        b = await make_connection(citizen, connection_no="B-0002", opening_reading=Decimal("0"))
        await _reading(a, 100, T0)            # baseline, nothing to bill against
        await _reading(a, 250, T0 + 30 * DAY)
        await _reading(a, 400, T0 + 60 * DAY)
        await _reading(b, 80, T0 + 10 * DAY)

        results = await billing.generate_pending_bills(now=T0 + 61 * DAY)
        statuses = [(r["connectionId"] == str(a.id), r["status"]) for r in results]
        assert statuses == [(True, "skipped"), (True, "billed"), (True, "billed"), (False, "billed")]
        assert results[0]["reason"] == "NO_PRIOR_READING"

        bills = await Bill.filter(connection_id=a.id).order_by("period_to")
        assert [b_.units_consumed for b_ in bills] == [Decimal("150"), Decimal("150")]
        assert bills[1].period_from == bills[0].period_to

        assert await billing.generate_pending_bills(now=T0 + 62 * DAY) == []

    @pytest.mark.asyncio
    async def test_single_connection(self, citizen, tariffs):
        a = await make_connection(citizen, opening_reading=Decimal("0"))
        b = await make_connection(citizen, opening_reading=Decimal("0"))
        await _reading(a, 10, T0)
        await _reading(b, 10, T0)
        results = await billing.generate_pending_bills(a.id, now=T0)
        assert [r["connectionId"] for r in results] == [str(a.id)]

    @pytest.mark.asyncio
    async def test_same_suffix_connections_read_together(self, citizen, tariffs):
        conns = [
            await make_connection(citizen, connection_no=no, opening_reading=Decimal("0"))
            for no in ("NORTH-0001", "SOUTH-0001", "WEST-0002")
        ]
        for conn in conns:
            await _reading(conn, 100, T0)

        results = await billing.generate_pending_bills(now=T0)
        assert [r["status"] for r in results] == ["billed"] * 3
        ms = int(T0.timestamp() * 1000)
        numbers = await Bill.all().order_by("bill_no").values_list("bill_no", flat=True)
        assert list(numbers) == [f"ELEC-{ms}-NORTH-0001", f"ELEC-{ms}-SOUTH-0001", f"ELEC-{ms}-WEST-0002"]

    @pytest.mark.asyncio
    async def test_enqueue_targets(self, opening):
        conn = await opening()
        reading = await _reading(conn, 1100, T0)
        by_reading = await billing.enqueue_bill_generation(meter_reading_id=reading.id)
        by_conn = await billing.enqueue_bill_generation(connection_id=conn.id)
        everything = await billing.enqueue_bill_generation()
        assert by_reading.payload == {"meterReadingId": str(reading.id), "connectionId": str(conn.id)}
        assert by_conn.payload == {"connectionId": str(conn.id)}
        assert everything.payload == {}
        with pytest.raises(ConnectionNotFound):
            await billing.enqueue_bill_generation(connection_id="6f1c1c2e-6a43-4c1e-9b59-8a2d2bb2a001")


class TestImport:
    @pytest.mark.asyncio
    async def test_import_validates_in_date_order(self, opening):
        conn = await opening()
        rows = [
            {"connectionId": str(conn.id), "value": "1200", "readingDate": (T0 + 30 * DAY).isoformat()},
            {"connectionId": str(conn.id), "value": "1100", "readingDate": T0.isoformat()},
            {"connectionId": str(conn.id), "value": "1150", "readingDate": (T0 + 45 * DAY).isoformat()},
            {"connectionId": "6f1c1c2e-6a43-4c1e-9b59-8a2d2bb2a001", "value": "5", "readingDate": T0.isoformat()},
        ]
        summary = await billing.import_readings(rows)

        assert len(summary["imported"]) == 2
        assert len(summary["rejected"]) == 2
        assert len(summary["jobs"]) == 1
        assert await Bill.all().count() == 0
        values = [r.value for r in await MeterReading.filter(connection_id=conn.id).order_by("reading_date")]
        assert values == [Decimal("1100"), Decimal("1200")]


class TestBillState:
    async def _bill(self, opening):
        conn = await opening()
        sub = await billing.submit_reading(conn.id, "1300", reading_date=T0, now=T0)
        return sub.bill

    @pytest.mark.asyncio
    async def test_partial_then_full_payment(self, opening):
        bill = await self._bill(opening)
        bill = await billing.confirm_payment(bill.id, "1000.00", paid_at=T0 + DAY)
        assert bill.status == BillStatus.PENDING
        assert bill.amount_paid == Decimal("1000.00")

        bill = await billing.confirm_payment(bill.id, "1061.00", paid_at=T0 + 2 * DAY)
        assert bill.status == BillStatus.PAID
        assert bill.paid_at == T0 + 2 * DAY

        with pytest.raises(InvalidBillState):
            await billing.confirm_payment(bill.id, "1")

    @pytest.mark.asyncio
    async def test_non_positive_payment(self, opening):
        bill = await self._bill(opening)
        with pytest.raises(InvalidPayment):
            await billing.confirm_payment(bill.id, "0")

    @pytest.mark.asyncio
    async def test_overdue_is_evaluated_lazily(self, opening):
        bill = await self._bill(opening)
        assert billing.effective_status(bill, T0 + 15 * DAY) == BillStatus.PENDING
        assert billing.effective_status(bill, T0 + 16 * DAY) == BillStatus.OVERDUE
        stored = await Bill.get(id=bill.id)
        assert stored.status == BillStatus.PENDING

    @pytest.mark.asyncio
    async def test_overdue_bill_can_still_be_paid(self, opening):
        bill = await self._bill(opening)
        bill = await billing.confirm_payment(bill.id, "2061.00", paid_at=T0 + 40 * DAY)
        assert billing.effective_status(bill, T0 + 41 * DAY) == BillStatus.PAID

    @pytest.mark.asyncio
    async def test_cancel_only_pending(self, opening):
        bill = await self._bill(opening)
        with pytest.raises(InvalidBillState):
            await billing.cancel_bill(bill.id, now=T0 + 20 * DAY)
        bill = await billing.cancel_bill(bill.id, now=T0 + DAY)
        assert bill.status == BillStatus.CANCELLED
        with pytest.raises(InvalidBillState):
            await billing.confirm_payment(bill.id, "10")
