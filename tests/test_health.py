"""Tests for the /health endpoints."""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

from autodidact.config import VERSION


def test_health_memory_store(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "db": "not_used"}


def test_health_postgres_connected(test_client, monkeypatch):
    monkeypatch.setattr("autodidact.config.settings.TASK_STORE", "postgres")
    pool = MagicMock()
    pool.fetchval = AsyncMock(return_value=1)
    with patch("autodidact.api.routers.health.get_pool", new=AsyncMock(return_value=pool)):
        response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["db"] == "connected"


def test_health_postgres_unreachable(test_client, monkeypatch):
    monkeypatch.setattr("autodidact.config.settings.TASK_STORE", "postgres")
    with patch("autodidact.api.routers.health.get_pool", new=AsyncMock(side_effect=OSError("refused"))):
        response = test_client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


def test_health_version(test_client):
    response = test_client.get("/health/version")
    assert response.status_code == 200
    assert response.json() == {"version": VERSION}


def test_request_id_header_generated(test_client):
    response = test_client.get("/health")
    uuid.UUID(response.headers["X-Request-ID"])


def test_request_id_header_echoed(test_client):
    response = test_client.get("/health", headers={"X-Request-ID": "my-trace-123"})
    assert response.headers["X-Request-ID"] == "my-trace-123"
