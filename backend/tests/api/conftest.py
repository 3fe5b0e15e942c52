"""API-specific test fixtures."""

import json
from contextlib import asynccontextmanager

import pytest
from fakeredis import aioredis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tryon.api.routes import api_router
from tryon.core.config import get_settings
from tryon.db import bind_engine, close_db, close_redis, get_redis, get_session_factory, init_db, set_redis
from tryon.main import build_services, install_exception_handlers
from tryon.middleware.correlation import setup_correlation_middleware

POLAR_SECRET = "polar_api_secret"


@pytest.fixture
def api_settings(monkeypatch):
    """Settings rebuilt from env so route-level get_settings() sees them too."""
    monkeypatch.setenv("POLAR_WEBHOOK_SECRET", POLAR_SECRET)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
    monkeypatch.setenv("PADDLE_WEBHOOK_SECRET", "")
    monkeypatch.setenv("CREDIT_PACKS", json.dumps({"price_small": 10, "price_large": 50}))
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def api_providers(fake_provider, make_config):
    return [
        (fake_provider("idm-vton"), make_config(rank=2)),
        (fake_provider("nano-banana"), make_config(rank=1)),
    ]


@pytest.fixture
def api_client(tmp_path, api_settings, api_providers):
    """FastAPI test client with a sqlite database and fakeredis.

    Initializes the database inside the TestClient's own event loop so
    route handlers can use the global session factory.
    """

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        # Reset global so init_db creates a fresh engine in THIS loop
        bind_engine(None)
        await init_db(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
        set_redis(aioredis.FakeRedis(decode_responses=True))
        build_services(app, api_settings, get_session_factory(), get_redis(), providers=api_providers)
        yield
        await close_redis()
        await close_db()

    app = FastAPI(title=api_settings.app_name, lifespan=test_lifespan)
    setup_correlation_middleware(app)
    install_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    with TestClient(app) as client:
        yield client


@pytest.fixture
def anonymous_account(api_client) -> dict:
    response = api_client.post("/api/accounts/anonymous")
    assert response.status_code == 201
    return response.json()
