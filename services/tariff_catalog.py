# services/tariff_catalog.py
"""
Tariff catalog: versioned, time-bounded slab schedules per
(service type, load class), and the per-service surcharge rules that go
with them. Readers never lock; writes are administrative.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from tortoise.expressions import Q

from models import ServiceType, TariffSlab
from services.errors import NoTariffFound, TariffScheduleError
from services.pricing import Slab, SurchargeRule, check_schedule

UTC = timezone.utc


@dataclass(frozen=True)
class ServiceRules:
    surcharges: Tuple[SurchargeRule, ...] = ()
    minimum_units: Decimal = Decimal("0")
    total_places: int = 2
    bill_prefix: str = "BILL"
    unit: str = "units"


# Assam FPPPA (April 2025), AGCL gas VAT, GMC sewerage levy.
SERVICE_RULES: Dict[ServiceType, ServiceRules] = {
    ServiceType.ELECTRICITY: ServiceRules(
        surcharges=(SurchargeRule.per_unit("FPPPA", "0.69"),),
        bill_prefix="ELEC",
        unit="kWh",
    ),
    ServiceType.WATER: ServiceRules(
        surcharges=(SurchargeRule.percent("SEWERAGE", "0.15"),),
        bill_prefix="WATR",
        unit="kL",
    ),
    ServiceType.GAS: ServiceRules(
        surcharges=(SurchargeRule.percent("VAT", "0.145"),),
        minimum_units=Decimal("5"),
        total_places=0,
        bill_prefix="GAS",
        unit="SCM",
    ),
    ServiceType.MUNICIPAL: ServiceRules(bill_prefix="MUNI"),
}


def service_rules(service_type) -> ServiceRules:
    return SERVICE_RULES[ServiceType(service_type)]


# (service_type, load_class, slab_start, slab_end, rate_per_unit, fixed_charge)
DEFAULT_SCHEDULES: List[tuple] = [
    # electricity (APDCL 2025)
    (ServiceType.ELECTRICITY, "RESIDENTIAL", "0", "120", "4.90", "60"),
    (ServiceType.ELECTRICITY, "RESIDENTIAL", "120", "240", "6.30", "60"),
    (ServiceType.ELECTRICITY, "RESIDENTIAL", "240", None, "7.50", "60"),
    (ServiceType.ELECTRICITY, "COMMERCIAL", "0", "500", "8.35", "150"),
    (ServiceType.ELECTRICITY, "COMMERCIAL", "500", None, "9.50", "150"),
    (ServiceType.ELECTRICITY, "INDUSTRIAL", "0", "1000", "7.00", "200"),
    (ServiceType.ELECTRICITY, "INDUSTRIAL", "1000", None, "8.00", "200"),
    # water, kilolitres
    (ServiceType.WATER, "DOMESTIC", "0", "10", "5", "50"),
    (ServiceType.WATER, "DOMESTIC", "10", "20", "7", "50"),
    (ServiceType.WATER, "DOMESTIC", "20", "30", "10", "50"),
    (ServiceType.WATER, "DOMESTIC", "30", None, "15", "50"),
    (ServiceType.WATER, "COMMERCIAL", "0", "10", "15", "150"),
    (ServiceType.WATER, "COMMERCIAL", "10", "20", "20", "150"),
    (ServiceType.WATER, "COMMERCIAL", "20", "30", "25", "150"),
    (ServiceType.WATER, "COMMERCIAL", "30", None, "35", "150"),
    # piped gas: base 17.42 + marketing margin 0.20 per SCM
    (ServiceType.GAS, "DOMESTIC", "0", None, "17.62", "0"),
]


def _is_valid_at(row, as_of: datetime) -> bool:
    return (
        row.active
        and row.valid_from <= as_of
        and (row.valid_to is None or row.valid_to >= as_of)
    )


def select_active(rows: Iterable, as_of: datetime) -> List[Slab]:
    """In-memory twin of active_slabs(): filter by window/active, sort by slab_start."""
    picked = sorted((r for r in rows if _is_valid_at(r, as_of)), key=lambda r: r.slab_start)
    return [Slab.from_row(r) for r in picked]


async def active_slabs(service_type, load_class: str, as_of: Optional[datetime] = None) -> List[Slab]:
    as_of = as_of or datetime.now(tz=UTC)
    rows = await (
        TariffSlab.filter(
            service_type=ServiceType(service_type),
            load_class=load_class,
            active=True,
            valid_from__lte=as_of,
        )
        .filter(Q(valid_to__isnull=True) | Q(valid_to__gte=as_of))
        .order_by("slab_start")
    )
    if not rows:
        raise NoTariffFound(service_type, load_class, as_of)
    # SQLite keeps decimals as text; re-sort numerically
    return [Slab.from_row(r) for r in sorted(rows, key=lambda r: r.slab_start)]


# -------- administrative writes --------
async def create_slab(
    service_type,
    load_class: str,
    slab_start,
    slab_end,
    rate_per_unit,
    fixed_charge=0,
    valid_from: Optional[datetime] = None,
    valid_to: Optional[datetime] = None,
) -> TariffSlab:
    if slab_end is not None and Decimal(str(slab_end)) <= Decimal(str(slab_start)):
        raise TariffScheduleError(f"Slab end {slab_end} must be above start {slab_start}")
    return await TariffSlab.create(
        service_type=ServiceType(service_type),
        load_class=load_class,
        slab_start=slab_start,
        slab_end=slab_end,
        rate_per_unit=rate_per_unit,
        fixed_charge=fixed_charge,
        valid_from=valid_from or datetime.now(tz=UTC),
        valid_to=valid_to,
        active=True,
    )


async def deactivate_slab(slab_id: int, now: Optional[datetime] = None) -> Optional[TariffSlab]:
    row = await TariffSlab.get_or_none(id=slab_id)
    if not row:
        return None
    row.active = False
    row.valid_to = now or datetime.now(tz=UTC)
    await row.save()
    return row


async def verify_schedule(service_type, load_class: str, as_of: Optional[datetime] = None) -> List[Slab]:
    """active_slabs() plus the contiguity check, for admin previews."""
    slabs = await active_slabs(service_type, load_class, as_of)
    check_schedule(slabs)
    return slabs


