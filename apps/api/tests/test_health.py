"""Health and readiness endpoints."""

from unittest.mock import patch

import httpx
import pytest

from memberhub_api.main import app
from memberhub_api.pricing import reset_catalog_loader


def test_health_always_ok(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"]["api"] == "up"
    assert body["services"]["redis"] == "not_configured"


def test_ready(test_client):
    response = test_client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["status"] == "ready"
    assert response.json()["services"]["price_catalog"] == "up"


def test_not_ready_when_database_down(test_client):
    with patch("memberhub_api.routers.health.check_database", return_value="down: connection refused"):
        response = test_client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_not_ready_on_invalid_price_catalog(test_client, tmp_path, monkeypatch):
    bad = tmp_path / "catalog.json"
    bad.write_text('{"catalog_version": "x", "default_tier": "gold", "prices": []}', encoding="utf-8")
    monkeypatch.setenv("PRICE_CATALOG_PATH", str(bad))
    reset_catalog_loader()

    response = test_client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["services"]["price_catalog"].startswith("down")


@pytest.mark.asyncio
async def test_health_over_asgi_transport(test_client):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health", headers={"X-Request-ID": "req-async-1"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-async-1"
