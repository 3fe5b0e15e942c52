"""Tests for WebhookReconciler: verify, filter, dedupe, resolve, apply, audit trail."""

import base64
import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis
from sqlalchemy import func, select

from tryon.core.exceptions import InvalidSignature
from tryon.db.models.account import Account
from tryon.db.models.ledger_entry import LedgerEntry
from tryon.db.models.payment_event import PaymentEventRecord
from tryon.integrations.payment_gateways import PaddleGateway, PaymentEvent, PolarGateway
from tryon.services.webhook_reconciler import WebhookReconciler

pytestmark = pytest.mark.integration

POLAR_SECRET = "polar_reconcile_secret"


def signed_polar(payload: dict, webhook_id: str = "msg_1") -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    digest = hmac.new(POLAR_SECRET.encode(), f"{webhook_id}.{ts}.".encode() + body, hashlib.sha256).digest()
    headers = {
        "webhook-id": webhook_id,
        "webhook-timestamp": ts,
        "webhook-signature": f"v1,{base64.b64encode(digest).decode()}",
    }
    return body, headers


def order_paid(account_id: str, credits=50, order_id="ord_1", email=None, event_type="order.paid", status="paid") -> dict:
    data = {"id": order_id, "status": status, "metadata": {"userId": account_id, "planCredits": credits}}
    if email:
        data["customer"] = {"email": email}
    return {"type": event_type, "data": data}


@pytest.fixture
def gateway():
    return PolarGateway(POLAR_SECRET)


@pytest.fixture
def reconciler(gateway, ledger, accounts, session_factory):
    gateways = {"polar": gateway, "paddle": PaddleGateway("")}
    return WebhookReconciler(gateways, ledger, accounts, session_factory)


async def _account(session_factory, account_id) -> Account:
    async with session_factory() as session:
        return await session.get(Account, account_id)


async def _record(session_factory, event_id) -> PaymentEventRecord:
    async with session_factory() as session:
        return await session.get(PaymentEventRecord, ("polar", event_id))


def test_gateway_lookup(reconciler):
    assert reconciler.gateway("polar") is not None
    assert reconciler.gateway("paddle") is None  # no secret configured
    assert reconciler.gateway("paypal") is None


async def test_paid_order_credits_account(reconciler, gateway, make_account, session_factory):
    account = await make_account(credits=10)
    body, headers = signed_polar(order_paid(account.id, credits=50))

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "credited"
    assert result.new_balance == 60
    assert (await _account(session_factory, account.id)).credits == 60

    record = await _record(session_factory, "msg_1")
    assert record.status == "credited"
    assert record.order_id == "ord_1"
    assert record.processed_at is not None


async def test_redelivery_is_idempotent(reconciler, gateway, make_account, session_factory):
    account = await make_account(credits=10)
    payload = order_paid(account.id, credits=50)

    for _ in range(3):
        body, headers = signed_polar(payload)
        result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "duplicate"
    assert (await _account(session_factory, account.id)).credits == 60
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(LedgerEntry)) == 1
    assert (await _record(session_factory, "msg_1")).delivery_count == 3


async def test_same_order_under_new_event_id_is_duplicate(reconciler, gateway, make_account, session_factory):
    account = await make_account()
    first = signed_polar(order_paid(account.id, event_type="order.created"), webhook_id="msg_a")
    second = signed_polar(order_paid(account.id, event_type="order.paid"), webhook_id="msg_b")

    assert (await reconciler.reconcile(gateway, *first)).status == "credited"
    assert (await reconciler.reconcile(gateway, *second)).status == "duplicate"
    assert (await _account(session_factory, account.id)).credits == 50


async def test_non_payment_event_ignored(reconciler, gateway, make_account, session_factory):
    account = await make_account()
    body, headers = signed_polar({"type": "checkout.created", "data": {"id": "chk_1"}})

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "ignored"
    assert (await _account(session_factory, account.id)).credits == 0
    assert (await _record(session_factory, "msg_1")).status == "ignored"


async def test_unpaid_order_ignored(reconciler, gateway, make_account):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id, status="pending"))
    assert (await reconciler.reconcile(gateway, body, headers)).status == "ignored"


@pytest.mark.parametrize(
    "metadata",
    [
        {"planCredits": 10},
        {"userId": "acct", "planCredits": 0},
        {"userId": "acct", "planCredits": -3},
        {"userId": "acct", "planCredits": "lots"},
        {"userId": "acct"},
    ],
)
async def test_malformed_events(reconciler, gateway, session_factory, metadata):
    body, headers = signed_polar({"type": "order.paid", "data": {"id": "ord_m", "status": "paid", "metadata": metadata}})

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "malformed"
    assert (await _record(session_factory, "msg_1")).status == "malformed"


async def test_unknown_account_is_acknowledged_as_failed(reconciler, gateway, session_factory):
    body, headers = signed_polar(order_paid("no-such-account"))

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "failed"
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(LedgerEntry)) == 0


async def test_invalid_signature_propagates_and_records_nothing(reconciler, gateway, make_account, session_factory):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id))
    headers["webhook-signature"] = "v1,AAAA"

    with pytest.raises(InvalidSignature):
        await reconciler.reconcile(gateway, body, headers)

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(PaymentEventRecord)) == 0
    assert (await _account(session_factory, account.id)).credits == 0


async def test_anonymous_account_gets_contact(reconciler, gateway, make_account, session_factory):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id, email="Buyer@Example.com"))

    await reconciler.reconcile(gateway, body, headers)

    stored = await _account(session_factory, account.id)
    assert stored.email == "buyer@example.com"
    assert stored.is_anonymous is False


async def test_contact_attach_failure_does_not_block_credit(reconciler, gateway, make_account, session_factory):
    await make_account(email="buyer@example.com")
    anonymous = await make_account()
    body, headers = signed_polar(order_paid(anonymous.id, email="buyer@example.com"))

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "credited"
    stored = await _account(session_factory, anonymous.id)
    assert stored.credits == 50
    assert stored.email is None


async def test_invalid_contact_is_swallowed(reconciler, gateway, make_account, session_factory):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id, email="not-an-email"))

    assert (await reconciler.reconcile(gateway, body, headers)).status == "credited"
    assert (await _account(session_factory, account.id)).email is None


def test_resolve_coerces_string_credits():
    event = PaymentEvent(
        gateway="stripe", event_id="evt", event_type="checkout.session.completed",
        is_payment=True, order_id="cs_1", account_id="acct", credits=" 25 ",
    )
    assert WebhookReconciler.resolve(event) == ("cs_1", "acct", 25)


async def test_redis_outage_during_credit_is_acknowledged(
    reconciler, gateway, make_account, redis_client, session_factory, monkeypatch
):
    account = await make_account(credits=5)
    body, headers = signed_polar(order_paid(account.id, credits=50))
    monkeypatch.setattr(redis_client, "set", AsyncMock(side_effect=redis.ConnectionError("redis down")))

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "failed"
    assert result.order_id == "ord_1"
    assert result.detail == "ConnectionError"
    record = await _record(session_factory, "msg_1")
    assert record.status == "failed"
    assert record.processed_at is not None
    assert (await _account(session_factory, account.id)).credits == 5


async def test_failed_order_is_credited_on_redelivery(
    reconciler, gateway, make_account, redis_client, session_factory, monkeypatch
):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id, credits=50))
    monkeypatch.setattr(redis_client, "set", AsyncMock(side_effect=redis.ConnectionError("redis down")))
    assert (await reconciler.reconcile(gateway, body, headers)).status == "failed"

    monkeypatch.undo()
    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "credited"
    assert (await _account(session_factory, account.id)).credits == 50
    assert (await _record(session_factory, "msg_1")).delivery_count == 2


async def test_audit_write_failure_is_acknowledged(reconciler, gateway, make_account, session_factory, monkeypatch):
    account = await make_account()
    body, headers = signed_polar(order_paid(account.id))
    monkeypatch.setattr(reconciler, "_record_delivery", AsyncMock(side_effect=RuntimeError("db down")))

    result = await reconciler.reconcile(gateway, body, headers)

    assert result.status == "failed"
    assert result.detail == "RuntimeError"
    assert (await _account(session_factory, account.id)).credits == 0
