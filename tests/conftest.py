"""Pytest configuration and shared fixtures."""

import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from tortoise import Tortoise

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from models import ConnectionStatus, ServiceConnection, ServiceType, User  # noqa: E402
from services import config  # noqa: E402
from services.seeder import seed_default_schedules  # noqa: E402

UTC = timezone.utc
T0 = datetime(2025, 6, 1, 10, 0, tzinfo=UTC)

TEST_DB = {
    "connections": {"default": "sqlite://:memory:"},
    "apps": {"models": {"models": ["models"], "default_connection": "default"}},
    "use_tz": True,
    "timezone": "UTC",
}


def _quiet(*_a, **_k):
    pass


@pytest.fixture(autouse=True)
def reset_config():
    """Reset config to defaults before each test."""
    original = {
        name: getattr(config, name)
        for name in (
            "SYNC_BILLING", "MAX_READING_DELTA", "JOB_BACKOFF_BASE_SECONDS",
            "JOB_MAX_ATTEMPTS", "FIRST_PERIOD_LOOKBACK_DAYS",
        )
    }
    yield
    for name, value in original.items():
        setattr(config, name, value)


@pytest_asyncio.fixture
async def db():
    await Tortoise.init(config=TEST_DB, _create_db=True)
    await Tortoise.generate_schemas()
    yield
    await Tortoise._drop_databases()


@pytest_asyncio.fixture
async def tariffs(db):
    await seed_default_schedules(logger=_quiet)


@pytest_asyncio.fixture
async def citizen(db):
    return await User.create(
        id=uuid.uuid4(), username="asha", email="asha@example.com", hashed_password="x",
    )


async def make_connection(user, service_type=ServiceType.ELECTRICITY, load_class="RESIDENTIAL",
                          connection_no=None, opening_reading=None, connected_at=None):
    return await ServiceConnection.create(
        connection_no=connection_no or f"CN{uuid.uuid4().hex[:8].upper()}",
        user=user,
        service_type=service_type,
        load_class=load_class,
        status=ConnectionStatus.ACTIVE,
        opening_reading=opening_reading,
        connected_at=connected_at,
    )


@pytest_asyncio.fixture
async def electricity(citizen, tariffs):
    return await make_connection(citizen, connection_no="ELEC-0001")
