"""End-to-end TryOnService tests: balance checks around provider orchestration."""

import asyncio

import pytest
from sqlalchemy import func, select

from tryon.core.exceptions import AllProvidersFailed, InvalidInput, NoBalance
from tryon.db.models.account import Account
from tryon.db.models.generation import Generation
from tryon.db.models.ledger_entry import LedgerEntry
from tryon.services.orchestrator import GenerationOrchestrator
from tryon.services.tryon_service import TryOnService

pytestmark = pytest.mark.integration


@pytest.fixture
def service(registry, ledger):
    return TryOnService(GenerationOrchestrator(registry), ledger)


async def _count(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def test_free_trial_generation(service, registry, fake_provider, make_config, make_account, images, session_factory):
    registry.register(fake_provider("nano-banana"), make_config())
    account = await make_account(credits=0, free_trials_used=0, free_trials_limit=1)
    person, garment = images

    result = await service.process(account.id, "upper_body", person, garment)

    assert result.debit.used_free_trial is True
    body = result.to_dict()
    assert body["provider"] == "nano-banana"
    assert body["free_trials_remaining"] == 0
    assert body["credits_remaining"] == 0

    async with session_factory() as session:
        generation = await session.get(Generation, result.generation_id)
        stored = await session.get(Account, account.id)
    assert generation.was_free_trial is True
    assert generation.category == "upper_body"
    assert (stored.credits, stored.free_trials_used) == (0, 1)


async def test_fallback_outcome_is_reported(service, registry, fake_provider, make_config, make_account, images):
    registry.register(fake_provider("p1", error=RuntimeError("503 from upstream")), make_config(rank=1))
    registry.register(fake_provider("p2"), make_config(rank=2))
    account = await make_account(credits=1, free_trials_used=1)

    result = await service.process(account.id, "upper_body", *images)

    assert result.outcome.provider == "p2"
    assert result.outcome.fallback is True
    assert result.debit.new_balance == 0


async def test_invalid_category_rejected_before_any_work(service, registry, fake_provider, make_config, make_account, images):
    provider = fake_provider("p1")
    registry.register(provider, make_config())
    account = await make_account()

    with pytest.raises(InvalidInput):
        await service.process(account.id, "hats", *images)
    assert provider.calls == []


async def test_no_balance_skips_provider(service, registry, fake_provider, make_config, make_account, images, session_factory):
    provider = fake_provider("p1")
    registry.register(provider, make_config())
    account = await make_account(credits=0, free_trials_used=1, free_trials_limit=1)

    with pytest.raises(NoBalance):
        await service.process(account.id, "dresses", *images)

    assert provider.calls == []
    assert await _count(session_factory, LedgerEntry) == 0


async def test_all_providers_failed_charges_nothing(service, registry, fake_provider, make_config, make_account, images, session_factory):
    registry.register(fake_provider("p1", error=RuntimeError("a")), make_config(rank=1))
    registry.register(fake_provider("p2", error=RuntimeError("b")), make_config(rank=2))
    account = await make_account(credits=5, free_trials_used=1)

    with pytest.raises(AllProvidersFailed):
        await service.process(account.id, "lower_body", *images)

    async with session_factory() as session:
        assert (await session.get(Account, account.id)).credits == 5
    assert await _count(session_factory, LedgerEntry) == 0
    assert await _count(session_factory, Generation) == 0


async def test_two_concurrent_requests_for_last_credit(service, registry, fake_provider, make_config, make_account, images, session_factory):
    # Slow enough that both requests pass the pre-check before either debits
    registry.register(fake_provider("p1", delay=0.05), make_config())
    account = await make_account(credits=1, free_trials_used=1, free_trials_limit=1)

    results = await asyncio.gather(
        service.process(account.id, "upper_body", *images),
        service.process(account.id, "upper_body", *images),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], NoBalance)

    async with session_factory() as session:
        assert (await session.get(Account, account.id)).credits == 0
    assert await _count(session_factory, Generation) == 1
