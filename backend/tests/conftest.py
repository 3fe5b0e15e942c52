"""Shared test fixtures: sqlite ledger database, fakeredis, fake providers."""

import asyncio

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tryon.core.locking import AccountLock
from tryon.db.base import create_schema, make_engine
from tryon.db.models.account import Account
from tryon.providers.base import Category, GenerationRequest, ImageInput, Provider, ProviderConfig
from tryon.providers.registry import ProviderRegistry
from tryon.services.accounts import AccountService
from tryon.services.credit_ledger import CreditLedger

RESULT_URL = "https://replicate.delivery/pbxt/result.jpg"


class FakeProvider(Provider):
    """In-memory provider: returns ``output`` or raises ``error`` after ``delay`` seconds."""

    def __init__(self, name: str, output=RESULT_URL, error: Exception | None = None, delay: float = 0.0):
        self.name = name
        self.display_name = name.replace("-", " ").title()
        self.output = output
        self.error = error
        self.delay = delay
        self.calls: list[GenerationRequest] = []

    async def run(self, request: GenerationRequest):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.output


def provider_config(rank: int = 1, **overrides) -> ProviderConfig:
    """Config ranking the provider ``rank`` in every category."""
    defaults = {
        "enabled": True,
        "active": True,
        "priority": {c: rank for c in Category},
        "timeout_seconds": 1.0,
        "model": "owner/model",
    }
    defaults.update(overrides)
    return ProviderConfig(**defaults)


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def engine(tmp_path):
    """File-backed sqlite so concurrent sessions see each other's commits."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'tryon.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def account_lock(redis_client):
    return AccountLock(redis_client, ttl=10, wait_timeout=5.0, poll_interval=0.01)


@pytest.fixture
def ledger(session_factory, account_lock):
    return CreditLedger(session_factory, account_lock)


@pytest.fixture
def accounts(session_factory):
    return AccountService(session_factory, default_free_trials_limit=1)


@pytest.fixture
def make_account(session_factory):
    """Factory inserting an Account with the given balance."""

    async def _make(credits=0, free_trials_used=0, free_trials_limit=1, email=None) -> Account:
        async with session_factory() as session:
            account = Account(
                email=email,
                is_anonymous=email is None,
                credits=credits,
                free_trials_used=free_trials_used,
                free_trials_limit=free_trials_limit,
            )
            session.add(account)
            await session.commit()
            await session.refresh(account)
            return account

    return _make


@pytest.fixture
def registry(redis_client):
    return ProviderRegistry(redis_client)


@pytest.fixture
def images():
    return (
        ImageInput(data=b"\xff\xd8person", content_type="image/jpeg", filename="person.jpg"),
        ImageInput(data=b"\x89PNGgarment", content_type="image/png", filename="garment.png"),
    )


@pytest.fixture
def make_request(images):
    person, garment = images

    def _make(category=Category.UPPER_BODY, provider=None, style=None, user_id="user-1") -> GenerationRequest:
        return GenerationRequest(
            user_id=user_id,
            category=category,
            person_image=person,
            garment_image=garment,
            provider=provider,
            style=style,
        )

    return _make


@pytest.fixture
def fake_provider():
    """The FakeProvider class, for building providers inline."""
    return FakeProvider


@pytest.fixture
def make_config():
    return provider_config
