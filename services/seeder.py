# services/seeder.py
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from passlib.context import CryptContext
from tortoise.transactions import in_transaction

from models import ServiceType, TariffSlab, User
from services import config
from services.tariff_catalog import DEFAULT_SCHEDULES

UTC = timezone.utc
pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

# default schedules are valid from well before any reading the portal holds
SEED_VALID_FROM = datetime(2025, 1, 1, tzinfo=UTC)


async def seed_admin(logger=print) -> Optional[User]:
    if await User.exists():
        return None
    user = await User.create(
        id=uuid.uuid4(),
        username=config.SEED_ADMIN_USERNAME,
        email=config.SEED_ADMIN_EMAIL,
        hashed_password=pwd_ctx.hash(config.SEED_ADMIN_PASSWORD),
        is_admin=True,
    )
    logger(f"[seed] admin user '{user.username}' created")
    return user


async def seed_default_schedules(
    logger=print,
    rows: Iterable[tuple] = DEFAULT_SCHEDULES,
    valid_from: datetime = SEED_VALID_FROM,
) -> dict:
    """
    Load the default tariff schedules for every (service, load class) that has
    no slabs yet. Schedules already present, active or not, are left alone.
    """
    created = {"slabs": 0}
    skipped = {"schedules": 0}

    groups: dict = {}
    for service_type, load_class, start, end, rate, fixed in rows:
        groups.setdefault((ServiceType(service_type), load_class), []).append((start, end, rate, fixed))

    async with in_transaction():
        for (service_type, load_class), slabs in groups.items():
            if await TariffSlab.exists(service_type=service_type, load_class=load_class):
                skipped["schedules"] += 1
                continue
            for start, end, rate, fixed in slabs:
                await TariffSlab.create(
                    service_type=service_type,
                    load_class=load_class,
                    slab_start=start,
                    slab_end=end,
                    rate_per_unit=rate,
                    fixed_charge=fixed,
                    valid_from=valid_from,
                    active=True,
                )
                created["slabs"] += 1

    logger(f"[seed] tariffs: created={created} skipped={skipped}")
    return {"created": created, "skipped": skipped}


async def seed_if_empty(logger=print):
    await seed_admin(logger=logger)
    return await seed_default_schedules(logger=logger)
