"""
Tests for the FastAPI application, health endpoint and auth dependency.
"""

import pytest
from unittest.mock import patch, AsyncMock
from httpx import AsyncClient, ASGITransport

from adaudit.config import Settings


@pytest.mark.anyio
async def test_health_endpoint_healthy():
    """Health endpoint should return healthy when DB is connected."""
    with patch("adaudit.main.check_db_connection", new_callable=AsyncMock, return_value=True):
        from adaudit.main import app
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["database"] == "connected"
            assert data["service"] == "Ads Audit Decisions"


@pytest.mark.anyio
async def test_health_endpoint_degraded():
    """Health endpoint should return degraded when DB is disconnected."""
    with patch("adaudit.main.check_db_connection", new_callable=AsyncMock, return_value=False):
        from adaudit.main import app
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "degraded"
            assert data["database"] == "disconnected"


def _keyed_settings() -> Settings:
    return Settings(api_key="test-api-key", secret_key="test-secret")


@pytest.mark.anyio
async def test_missing_token_rejected_when_api_key_configured(client):
    with patch("adaudit.auth.get_settings", return_value=_keyed_settings()):
        response = await client.get("/api/export/account/00000000-0000-0000-0000-000000000001/change-sets")
    assert response.status_code == 401


@pytest.mark.anyio
async def test_jwt_subject_becomes_created_by(client, account_id):
    from adaudit.auth import create_access_token

    settings = _keyed_settings()
    with patch("adaudit.auth.get_settings", return_value=settings):
        token = create_access_token("operator-42")
        response = await client.post(
            "/api/decisions",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "account_id": str(account_id),
                "module_id": 2,
                "entity_type": "campaign",
                "entity_id": "c-1",
                "action_type": "pause",
            },
        )
    assert response.status_code == 201
    assert response.json()["created_by"] == "operator-42"


@pytest.mark.anyio
async def test_api_key_actor(client, account_id):
    with patch("adaudit.auth.get_settings", return_value=_keyed_settings()):
        response = await client.post(
            "/api/decisions",
            headers={"Authorization": "Bearer test-api-key"},
            json={
                "account_id": str(account_id),
                "module_id": 2,
                "entity_type": "campaign",
                "entity_id": "c-1",
                "action_type": "pause",
            },
        )
    assert response.status_code == 201
    assert response.json()["created_by"] == "api-key"


@pytest.mark.anyio
async def test_invalid_token_rejected(client):
    with patch("adaudit.auth.get_settings", return_value=_keyed_settings()):
        response = await client.get(
            "/api/decisions/group/00000000-0000-0000-0000-000000000001/history",
            headers={"Authorization": "Bearer not-a-token"},
        )
    assert response.status_code == 401
