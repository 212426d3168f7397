"""API-specific test fixtures."""

import httpx
import pytest

from reconciler.api.routes.webhooks import get_event_normalizer


@pytest.fixture
def app(engine, redis_client, rates):
    """The FastAPI app with the SQLite engine, fake Redis and seeded rates installed.

    The lifespan does not run under ASGITransport, so the fixtures stand in for it.
    """
    from reconciler.main import create_app

    get_event_normalizer.cache_clear()
    application = create_app()
    yield application
    application.dependency_overrides.clear()
    get_event_normalizer.cache_clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
