"""Tests for the per-account Redis lock."""

import asyncio

import pytest

from tryon.core.exceptions import AccountLockTimeout
from tryon.core.locking import AccountLock

pytestmark = pytest.mark.unit


async def test_acquire_is_exclusive(account_lock):
    assert await account_lock.acquire("acct-1", "owner-a") is True
    assert await account_lock.acquire("acct-1", "owner-b") is False
    assert await account_lock.acquire("acct-2", "owner-b") is True


async def test_release_only_by_owner(account_lock):
    await account_lock.acquire("acct-1", "owner-a")
    assert await account_lock.release("acct-1", "owner-b") is False
    assert await account_lock.is_locked("acct-1")
    assert await account_lock.release("acct-1", "owner-a") is True
    assert not await account_lock.is_locked("acct-1")


async def test_release_leaves_reacquired_lock(account_lock, redis_client):
    key = "tryon:lock:account:acct-1"
    await account_lock.acquire("acct-1", "owner-a")
    await redis_client.delete(key)  # TTL elapsed
    await account_lock.acquire("acct-1", "owner-b")

    assert await account_lock.release("acct-1", "owner-a") is False
    assert await redis_client.get(key) == "owner-b"


async def test_release_aborts_if_lock_changes_hands_mid_release(account_lock, redis_client, monkeypatch):
    key = "tryon:lock:account:acct-1"
    await account_lock.acquire("acct-1", "owner-a")
    real_pipeline = redis_client.pipeline

    def pipeline(*args, **kwargs):
        pipe = real_pipeline(*args, **kwargs)
        real_get = pipe.get

        async def get(name):
            value = await real_get(name)
            # Expiry plus a new holder between the owner check and the delete
            await redis_client.set(key, "owner-b", ex=10)
            return value

        pipe.get = get
        return pipe

    monkeypatch.setattr(redis_client, "pipeline", pipeline)

    assert await account_lock.release("acct-1", "owner-a") is False
    assert await redis_client.get(key) == "owner-b"


async def test_lock_carries_ttl(account_lock, redis_client):
    await account_lock.acquire("acct-1", "owner-a")
    ttl = await redis_client.ttl("tryon:lock:account:acct-1")
    assert 0 < ttl <= account_lock.ttl


async def test_hold_releases_on_exit(account_lock):
    async with account_lock.hold("acct-1"):
        assert await account_lock.is_locked("acct-1")
    assert not await account_lock.is_locked("acct-1")


async def test_hold_releases_on_error(account_lock):
    with pytest.raises(RuntimeError):
        async with account_lock.hold("acct-1"):
            raise RuntimeError("boom")
    assert not await account_lock.is_locked("acct-1")


async def test_hold_serializes_holders(account_lock):
    events: list[str] = []

    async def worker(tag):
        async with account_lock.hold("acct-1"):
            events.append(f"{tag}-in")
            await asyncio.sleep(0.02)
            events.append(f"{tag}-out")

    await asyncio.gather(worker("a"), worker("b"))

    # No interleaving: each holder exits before the next enters
    assert events[0][0] == events[1][0]
    assert events[2][0] == events[3][0]


async def test_hold_times_out(redis_client):
    lock = AccountLock(redis_client, ttl=10, wait_timeout=0.05, poll_interval=0.01)
    await lock.acquire("acct-1", "someone-else")
    with pytest.raises(AccountLockTimeout) as exc_info:
        async with lock.hold("acct-1"):
            pass
    assert exc_info.value.account_id == "acct-1"
