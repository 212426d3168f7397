"""Shared test fixtures: SQLite database, fake Redis, exchange rates."""

import os

import pytest

# Secrets must be in place before anything caches Settings
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-1")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_paystack")
os.environ.setdefault("FLUTTERWAVE_SECRET_KEY", "FLWSECK_TEST-dummy")
os.environ.setdefault("FLUTTERWAVE_SECRET_HASH", "flw-secret-hash")
os.environ.setdefault("WORKER_ENABLED", "false")

from fakeredis import aioredis  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from reconciler.core.config import Settings, get_settings  # noqa: E402
from reconciler.db.base import Base  # noqa: E402
from tests.helpers import TEST_RATES, seed_rates  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
async def redis_client():
    """Fake Redis installed as the shared client."""
    import reconciler.db.redis as redis_mod

    client = aioredis.FakeRedis(decode_responses=True)
    redis_mod._redis = client
    yield client
    redis_mod._redis = None
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def rates(redis_client):
    await seed_rates(redis_client)
    return TEST_RATES


@pytest.fixture
async def engine(tmp_path):
    """SQLite test engine with tables created and plan tiers seeded.

    Sets the global session factory so code calling get_session_factory() uses it.
    """
    import reconciler.db.base as db_mod
    import reconciler.db.models  # noqa: F401
    from reconciler.db.seed import seed_plan_tiers

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await seed_plan_tiers()

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
