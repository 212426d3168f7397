"""Liveness and readiness endpoints."""

import pytest

pytestmark = pytest.mark.integration


async def test_health(client) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "subscription-reconciler"}


async def test_health_while_draining(app, client) -> None:
    app.state.shutting_down = True
    response = await client.get("/api/health")
    assert response.status_code == 503


async def test_ready_checks_database_and_redis(client) -> None:
    response = await client.get("/api/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "redis": True}
