# routers/tariffs.py
from fastapi import APIRouter, Depends, HTTPException

from models import ServiceType, TariffSlab, User
from schemas import TariffSlabCreate, TariffSlabRead
from api_utils import RAListParams, parse_sort, apply_filter_map, paginate_and_respond, respond_item
from deps import get_current_admin_user
from services import tariff_catalog

router = APIRouter(prefix="/tariffs", tags=["tariffs"])

def to_slab_read(t: TariffSlab) -> TariffSlabRead:
    return TariffSlabRead.model_validate(t)

@router.get("", response_model=list[TariffSlabRead])
async def list_slabs(params: RAListParams = Depends()):
    qs = TariffSlab.all()
    fmap = {
        "service_type": lambda q, v: q.filter(service_type=ServiceType(v)),
        "load_class": lambda q, v: q.filter(load_class__iexact=str(v)),
        "active": lambda q, v: q.filter(active=bool(v)),
    }
    qs = apply_filter_map(qs, params.filters, fmap)
    order = parse_sort(params.sort, ["service_type", "load_class", "slab_start", "valid_from", "active", "created_at"])
    return await paginate_and_respond(qs, params.skip, params.limit, order, to_slab_read)

@router.get("/schedule/{service_type}/{load_class}")
async def active_schedule(service_type: ServiceType, load_class: str):
    """Slabs a bill priced right now would use, checked for gaps and overlaps."""
    slabs = await tariff_catalog.verify_schedule(service_type, load_class)
    rules = tariff_catalog.service_rules(service_type)
    return {
        "service_type": service_type.value,
        "load_class": load_class,
        "unit": rules.unit,
        "minimum_units": str(rules.minimum_units),
        "surcharges": [{"name": r.name, "kind": r.kind, "rate": str(r.rate)} for r in rules.surcharges],
        "slabs": [
            {"label": s.label, "rate_per_unit": str(s.rate_per_unit), "fixed_charge": str(s.fixed_charge)}
            for s in slabs
        ],
    }

@router.get("/{slab_id}", response_model=TariffSlabRead)
async def get_slab(slab_id: int):
    obj = await TariffSlab.get_or_none(id=slab_id)
    if not obj:
        raise HTTPException(404, "Tariff slab not found")
    return respond_item(obj, to_slab_read)

@router.post("", response_model=TariffSlabRead, status_code=201)
async def create_slab(payload: TariffSlabCreate, _: User = Depends(get_current_admin_user)):
    obj = await tariff_catalog.create_slab(**payload.model_dump())
    return respond_item(obj, to_slab_read, status_code=201)

@router.delete("/{slab_id}", response_model=TariffSlabRead)
async def deactivate_slab(slab_id: int, _: User = Depends(get_current_admin_user)):
    obj = await tariff_catalog.deactivate_slab(slab_id)
    if not obj:
        raise HTTPException(404, "Tariff slab not found")
    return respond_item(obj, to_slab_read)
