import httpx
from httpx import AsyncClient
from fastapi import status
from app.main import app
import uuid

import pytest

@pytest.mark.asyncio
async def test_register_login_me(db):
    unique_email = f"Test-{uuid.uuid4()}@Example.com"

    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        # register
        r = await ac.post("/auth/register", json={"email": unique_email, "password": "supersecret"})
        assert r.status_code == status.HTTP_201_CREATED
        assert r.json()["is_admin"] is False
        # login is case-insensitive on email
        r = await ac.post("/auth/login", json={"email": unique_email.lower(), "password": "supersecret"})
        assert r.status_code == 200
        tokens = r.json()
        assert "access" in tokens and "refresh" in tokens
        # me with access token
        me = await ac.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access']}"})
        assert me.status_code == 200
        assert me.json()["email"] == unique_email.lower()
        # refresh to new pair
        r = await ac.post("/auth/refresh", headers={"Authorization": f"Bearer {tokens['refresh']}"})
        assert r.status_code == 200
        assert "access" in r.json()
        # a refresh token is not an access token
        me = await ac.get("/auth/me", headers={"Authorization": f"Bearer {tokens['refresh']}"})
        assert me.status_code == 401

@pytest.mark.asyncio
async def test_duplicate_email_rejected(db):
    email = f"dup-{uuid.uuid4().hex[:8]}@ex.com"
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        r1 = await ac.post("/auth/register", json={"email": email, "password": "supersecret"})
        assert r1.status_code == 201
        r2 = await ac.post("/auth/register", json={"email": email.upper(), "password": "supersecret"})
        assert r2.status_code == 409
        assert r2.json()["detail"] == "Email already registered"

@pytest.mark.asyncio
async def test_bad_credentials_and_missing_token(db):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
        r = await ac.post("/auth/login", json={"email": "nobody@ex.com", "password": "whatever1"})
        assert r.status_code == 401
        r = await ac.get("/wallet")
        assert r.status_code == 401
        assert r.json()["detail"] == "Authorization required"
        r = await ac.get("/wallet", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401
