# services/readings.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from models import MeterReading
from services.errors import ImplausibleReading, NonMonotonicReading
from services.pricing import D


@dataclass(frozen=True)
class ConsumptionDelta:
    connection_id: object
    previous_value: Optional[Decimal]
    current_value: Decimal
    units: Decimal
    is_baseline: bool = False  # nothing to measure against yet


def validate(
    connection_id,
    new_value,
    prior: Optional[MeterReading] = None,
    *,
    baseline=None,
    max_delta=None,
) -> ConsumptionDelta:
    """
    Accept or reject a reading against the last one recorded for the connection.

    `prior` wins over `baseline` (the connection's opening meter value). With
    neither, the reading only establishes a baseline: units == new_value and
    is_baseline is set so callers do not bill it.
    Readings are never clamped: a lower value raises NonMonotonicReading.
    """
    value = D(new_value)
    if value < 0:
        raise ImplausibleReading(f"Reading cannot be negative ({value})")

    previous = D(prior.value) if prior is not None else (None if baseline is None else D(baseline))
    if previous is None:
        return ConsumptionDelta(connection_id, None, value, value, is_baseline=True)

    if value < previous:
        raise NonMonotonicReading(connection_id, value, previous)

    units = value - previous
    if max_delta is not None and units > D(max_delta):
        raise ImplausibleReading(
            f"Consumption of {units} units exceeds the {max_delta} units allowed for one reading"
        )
    return ConsumptionDelta(connection_id, previous, value, units)


async def latest_reading(connection_id, before: Optional[datetime] = None) -> Optional[MeterReading]:
    qs = MeterReading.filter(connection_id=connection_id)
    if before is not None:
        qs = qs.filter(reading_date__lt=before)
    return await qs.order_by("-reading_date", "-created_at").first()


async def previous_reading(reading: MeterReading) -> Optional[MeterReading]:
    return await latest_reading(reading.connection_id, before=reading.reading_date)
