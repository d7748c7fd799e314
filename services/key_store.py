# services/key_store.py
"""Persistent key/value store with expiry, backed by the expiring_keys table."""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tortoise.exceptions import IntegrityError

from models import ExpiringKey

UTC = timezone.utc


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(tz=UTC)


async def get(key: str, now: Optional[datetime] = None) -> Optional[Any]:
    row = await ExpiringKey.get_or_none(key=key)
    if not row or row.expires_at <= _now(now):
        return None
    return row.value


async def put(key: str, value: Any, ttl_seconds: float, now: Optional[datetime] = None) -> None:
    expires = _now(now) + timedelta(seconds=ttl_seconds)
    updated = await ExpiringKey.filter(key=key).update(value=value, expires_at=expires)
    if not updated:
        await ExpiringKey.create(key=key, value=value, expires_at=expires)


async def add(key: str, value: Any, ttl_seconds: float, now: Optional[datetime] = None) -> bool:
    """Insert only if the key is absent or expired. False when a live key exists."""
    now = _now(now)
    await ExpiringKey.filter(key=key, expires_at__lte=now).delete()
    try:
        await ExpiringKey.create(key=key, value=value, expires_at=now + timedelta(seconds=ttl_seconds))
    except IntegrityError:
        return False
    return True


async def delete(key: str) -> None:
    await ExpiringKey.filter(key=key).delete()


async def purge_expired(now: Optional[datetime] = None) -> int:
    return await ExpiringKey.filter(expires_at__lte=_now(now)).delete()
