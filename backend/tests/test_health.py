# tests/test_health.py — Health probe, banner and middleware headers
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["environment"] == "test"


@pytest.mark.asyncio
async def test_root_banner(client: AsyncClient):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.json()["name"] == "Task Board API"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-42"})
    assert resp.headers["X-Request-ID"] == "req-42"
    assert "X-Response-Time" in resp.headers


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    resp = await client.get("/")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_unknown_route(client: AsyncClient):
    resp = await client.get("/api/v1/nothing-here")
    assert resp.status_code == 404
