# services/pricing.py
"""
Slab pricing engine.

Pure functions over Decimal: no database, no clock, no randomness. The same
inputs always produce an equal BillCalculation, which is what makes a bill
auditable after the fact (re-run the numbers from the stored breakdown).

Rounding rule: slab amounts and the energy charge are kept exact; every
surcharge is rounded half-up to 2 places; the total is rounded half-up to the
service's precision (2 places, or whole rupees for gas).
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Sequence, Tuple

from services.errors import InvalidConsumption, TariffScheduleError

PER_UNIT = "PER_UNIT"
PERCENT = "PERCENT"

ZERO = Decimal("0")
OPEN_END = "∞"


def D(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # go through repr so 4.9 stays 4.9 and not 4.9000000000000003552...
        return Decimal(repr(value))
    return Decimal(value)


def round_money(value: Decimal, places: int = 2) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def fmt_qty(value: Decimal) -> str:
    """120.00 -> '120', 12.50 -> '12.5' (no exponent notation)."""
    return format(value.normalize(), "f")


@dataclass(frozen=True)
class Slab:
    slab_start: Decimal
    slab_end: Optional[Decimal]
    rate_per_unit: Decimal
    fixed_charge: Decimal = ZERO

    def __post_init__(self):
        object.__setattr__(self, "slab_start", D(self.slab_start))
        object.__setattr__(self, "slab_end", None if self.slab_end is None else D(self.slab_end))
        object.__setattr__(self, "rate_per_unit", D(self.rate_per_unit))
        object.__setattr__(self, "fixed_charge", D(self.fixed_charge))

    @classmethod
    def from_row(cls, row) -> "Slab":
        return cls(row.slab_start, row.slab_end, row.rate_per_unit, row.fixed_charge)

    @property
    def size(self) -> Optional[Decimal]:
        return None if self.slab_end is None else self.slab_end - self.slab_start

    @property
    def label(self) -> str:
        end = OPEN_END if self.slab_end is None else fmt_qty(self.slab_end)
        return f"{fmt_qty(self.slab_start)}-{end}"


@dataclass(frozen=True)
class SurchargeRule:
    """PER_UNIT: billable units * rate. PERCENT: energy charge * rate (rate is a fraction)."""
    name: str
    kind: str
    rate: Decimal

    def __post_init__(self):
        if self.kind not in (PER_UNIT, PERCENT):
            raise ValueError(f"Unknown surcharge kind {self.kind!r}")
        object.__setattr__(self, "rate", D(self.rate))

    @classmethod
    def per_unit(cls, name: str, rate) -> "SurchargeRule":
        return cls(name, PER_UNIT, rate)

    @classmethod
    def percent(cls, name: str, rate) -> "SurchargeRule":
        return cls(name, PERCENT, rate)

    def apply(self, billable_units: Decimal, energy_charge: Decimal) -> "SurchargeCharge":
        base = billable_units if self.kind == PER_UNIT else energy_charge
        return SurchargeCharge(self.name, self.kind, self.rate, round_money(base * self.rate))


@dataclass(frozen=True)
class SlabCharge:
    slab: str
    units: Decimal
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True)
class SurchargeCharge:
    name: str
    kind: str
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True)
class BillCalculation:
    units_consumed: Decimal
    billable_units: Decimal
    fixed_charge: Decimal
    energy_charge: Decimal
    service_surcharge: Decimal
    total_amount: Decimal
    slab_breakdown: Tuple[SlabCharge, ...]
    surcharges: Tuple[SurchargeCharge, ...] = ()

    def surcharge(self, name: str) -> Decimal:
        for s in self.surcharges:
            if s.name == name:
                return s.amount
        return ZERO

    def to_dict(self) -> Dict[str, Any]:
        # decimals as strings: lossless in JSON columns
        return {
            "units_consumed": str(self.units_consumed),
            "billable_units": str(self.billable_units),
            "fixed_charge": str(self.fixed_charge),
            "energy_charge": str(self.energy_charge),
            "service_surcharge": str(self.service_surcharge),
            "total_amount": str(self.total_amount),
            "slab_breakdown": [
                {"slab": r.slab, "units": str(r.units), "rate": str(r.rate), "amount": str(r.amount)}
                for r in self.slab_breakdown
            ],
            "surcharges": [
                {"name": s.name, "kind": s.kind, "rate": str(s.rate), "amount": str(s.amount)}
                for s in self.surcharges
            ],
        }


def check_schedule(slabs: Sequence[Slab]) -> None:
    """Slabs must start at 0, be contiguous and ascending, and end with one open slab."""
    if not slabs:
        raise TariffScheduleError("Tariff schedule has no slabs")
    if slabs[0].slab_start != ZERO:
        raise TariffScheduleError(f"Tariff schedule starts at {slabs[0].slab_start}, expected 0")
    for i, s in enumerate(slabs):
        last = i == len(slabs) - 1
        if s.slab_end is None:
            if not last:
                raise TariffScheduleError(f"Open slab {s.label} is not the last slab")
            continue
        if s.slab_end <= s.slab_start:
            raise TariffScheduleError(f"Slab {s.label} is empty or inverted")
        if last:
            raise TariffScheduleError("Tariff schedule has no open-ended top slab")
        if slabs[i + 1].slab_start != s.slab_end:
            raise TariffScheduleError(f"Slab {slabs[i + 1].label} does not continue from {s.label}")


def price(
    units_consumed,
    slabs: Sequence[Slab],
    surcharges: Sequence[SurchargeRule] = (),
    minimum_units=0,
    total_places: int = 2,
) -> BillCalculation:
    units = D(units_consumed)
    if units < 0:
        raise InvalidConsumption(units)
    check_schedule(slabs)

    # floor goes in before the slab walk so band boundaries see billed units
    billable = max(units, D(minimum_units))

    remaining = billable
    energy = ZERO
    rows = []
    for s in slabs:
        if remaining <= 0:
            break
        size = s.size
        in_slab = remaining if size is None else min(remaining, size)
        amount = in_slab * s.rate_per_unit
        energy += amount
        rows.append(SlabCharge(s.label, in_slab, s.rate_per_unit, amount))
        remaining -= in_slab

    fixed = slabs[0].fixed_charge
    charges = tuple(rule.apply(billable, energy) for rule in surcharges)
    surcharge_total = sum((c.amount for c in charges), ZERO)

    return BillCalculation(
        units_consumed=units,
        billable_units=billable,
        fixed_charge=fixed,
        energy_charge=energy,
        service_surcharge=surcharge_total,
        total_amount=round_money(fixed + energy + surcharge_total, total_places),
        slab_breakdown=tuple(rows),
        surcharges=charges,
    )
