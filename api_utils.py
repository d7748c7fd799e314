# api_utils.py
import json
from typing import Any, Callable, Iterable
from fastapi import HTTPException, Query
from fastapi.responses import JSONResponse
from tortoise.queryset import QuerySet

MAX_PAGE = 500

# ---------- React-Admin param parsing ----------
def parse_range(range_param: str) -> tuple[int, int]:
    """'[0,9]' -> (skip=0, limit=10)."""
    try:
        start, end = (int(x) for x in json.loads(range_param))
    except (ValueError, TypeError):
        raise HTTPException(400, f"Invalid range {range_param!r}")
    if start < 0 or end < start:
        raise HTTPException(400, f"Invalid range {range_param!r}")
    return start, min(end - start + 1, MAX_PAGE)

def parse_sort(sort_param: str, allowed_fields: Iterable[str]) -> str:
    allowed = set(allowed_fields) | {"id"}
    try:
        field, order = json.loads(sort_param)
    except (ValueError, TypeError):
        field, order = ("id", "ASC")
    field = field if field in allowed else "id"
    prefix = "-" if str(order).upper() == "DESC" else ""
    return f"{prefix}{field}"

def parse_filter(filter_param: str | None) -> dict:
    try:
        parsed = json.loads(filter_param or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}

# ---------- Query helpers ----------
def apply_filter_map(qs: QuerySet, filters: dict, fmap: dict[str, Callable[[QuerySet, Any], QuerySet]]) -> QuerySet:
    for key, fn in fmap.items():
        if key in filters and filters[key] is not None:
            qs = fn(qs, filters[key])
    return qs

async def paginate_and_respond(
    qs: QuerySet,
    skip: int,
    limit: int,
    order: str,
    to_pydantic: Callable[[Any], Any],
) -> JSONResponse:
    total = await qs.count()
    items = await qs.order_by(order).offset(skip).limit(limit)
    end_real = skip + max(len(items) - 1, 0)

    # model_dump(mode="json") keeps Decimal/UUID/datetime JSON-safe
    content = [to_pydantic(it).model_dump(mode="json") for it in items]
    return JSONResponse(
        status_code=206 if total > len(items) else 200,
        content=content,
        headers={"Content-Range": f"items {skip}-{end_real}/{total}", "X-Total-Count": str(total)},
    )

def respond_item(model_obj: Any, to_pydantic: Callable[[Any], Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=to_pydantic(model_obj).model_dump(mode="json"))

# ---------- RA params container ----------
class RAListParams:
    def __init__(
        self,
        range: str = Query("[0,24]"),
        sort: str = Query('["id","ASC"]'),
        filter: str = Query("{}"),
    ):
        self.skip, self.limit = parse_range(range)
        self.filters = parse_filter(filter)
        self.sort = sort
