# services/notifications.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from models import Bill, Notification
from services.errors import BillNotFound

logger = logging.getLogger(__name__)

BILL_GENERATED = "BILL_GENERATED"


@dataclass(frozen=True)
class BillGeneratedEvent:
    user_id: Any
    bill_id: Any
    bill_no: str
    total_amount: Decimal
    due_date: datetime
    units_consumed: Decimal
    kind: str = BILL_GENERATED

    @classmethod
    def for_bill(cls, bill: Bill) -> "BillGeneratedEvent":
        return cls(
            user_id=bill.user_id,
            bill_id=bill.id,
            bill_no=bill.bill_no,
            total_amount=bill.total_amount,
            due_date=bill.due_date,
            units_consumed=bill.units_consumed,
        )

    def data(self) -> Dict[str, Any]:
        return {
            "billId": str(self.bill_id),
            "billNo": self.bill_no,
            "totalAmount": str(self.total_amount),
            "dueDate": self.due_date.isoformat(),
        }


class NotificationSink:
    """Where bill events go. Delivery and localisation belong to the sink."""
    async def emit(self, event: BillGeneratedEvent) -> None:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Writes the event into the citizen's in-app inbox."""
    async def emit(self, event: BillGeneratedEvent) -> None:
        await Notification.create(
            user_id=event.user_id,
            kind=event.kind,
            title="New bill generated",
            message=(
                f"Your bill for {event.units_consumed} units is ₹{event.total_amount}. "
                f"Bill No: {event.bill_no}. Due date: {event.due_date.date().isoformat()}"
            ),
            data=event.data(),
        )
        logger.info("[notify] %s queued for user %s", event.bill_no, event.user_id)


default_sink = DatabaseNotificationSink()


async def redeliver(bill_id, sink: NotificationSink = default_sink) -> None:
    """Re-emit BILL_GENERATED for a stored bill (SEND_NOTIFICATIONS jobs)."""
    bill = await Bill.get_or_none(id=bill_id)
    if not bill:
        raise BillNotFound(bill_id)
    await sink.emit(BillGeneratedEvent.for_bill(bill))
