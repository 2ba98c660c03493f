import httpx
import pytest
from httpx import AsyncClient
from fastapi.testclient import TestClient
from app.main import app

client = TestClient(app)

def test_health_ok():
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert "request_id" in data
    assert r.headers.get("x-request-id")

def test_health_echoes_request_id():
    r = client.get("/health", headers={"x-request-id": "req-123"})
    assert r.json()["request_id"] == "req-123"

def test_version_ok():
    r = client.get("/version")
    assert r.status_code == 200
    data = r.json()
    assert data["name"] == "cashmatch-api"
    assert "version" in data and "git_sha" in data

@pytest.mark.asyncio
async def test_ready_checks_database(db):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        r = await ac.get("/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ready", "database": "ok"}
