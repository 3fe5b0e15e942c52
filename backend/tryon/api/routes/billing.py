"""Billing routes: Stripe Checkout for credit packs and payment webhooks."""

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tryon.api.deps import get_accounts, get_reconciler
from tryon.core.config import get_settings
from tryon.core.exceptions import InvalidSignature
from tryon.services.accounts import AccountService
from tryon.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Request / Response schemas ──────────────────────────────────────


class CheckoutRequest(BaseModel):
    user_id: str
    price_id: str


class CheckoutResponse(BaseModel):
    checkout_url: str
    credits: int


# ── Helpers ─────────────────────────────────────────────────────────


def _get_stripe() -> None:
    """Configure the stripe module with the secret key."""
    settings = get_settings()
    if not settings.stripe_secret_key:
        logger.error("stripe_secret_key_missing")
        raise HTTPException(status_code=503, detail="Stripe checkout is not configured")
    stripe.api_key = settings.stripe_secret_key


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/billing/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    accounts: AccountService = Depends(get_accounts),
):
    """Create a one-off Stripe Checkout session for a credit pack.

    ``user_id`` and ``credits`` ride along in the session metadata; the
    Stripe webhook reads them back to credit the account.
    """
    settings = get_settings()
    credits = settings.credit_packs.get(body.price_id)
    if not credits:
        raise HTTPException(status_code=400, detail=f"Unknown credit pack: {body.price_id}")

    account = await accounts.get_account(body.user_id)
    _get_stripe()

    params = {
        "mode": "payment",
        "line_items": [{"price": body.price_id, "quantity": 1}],
        "client_reference_id": account.id,
        "success_url": f"{settings.frontend_url}/?checkout_success=true",
        "cancel_url": f"{settings.frontend_url}/pricing",
        "metadata": {"user_id": account.id, "credits": str(credits)},
    }
    if account.email:
        params["customer_email"] = account.email

    checkout_session = await stripe.checkout.Session.create_async(**params)
    logger.info("checkout_session_created", account_id=account.id, price_id=body.price_id, credits=credits)

    return CheckoutResponse(checkout_url=checkout_session.url, credits=credits)


@router.post("/webhooks/{gateway_name}")
async def payment_webhook(
    gateway_name: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Verify and reconcile one payment webhook delivery.

    Anything past signature verification is acknowledged with 200 so the
    gateway does not redeliver; the outcome is in ``result``.
    """
    gateway = reconciler.gateway(gateway_name)
    if gateway is None:
        raise HTTPException(status_code=404, detail=f"Unknown or unconfigured gateway: {gateway_name}")

    body = await request.body()
    try:
        result = await reconciler.reconcile(gateway, body, request.headers)
    except InvalidSignature as exc:
        if get_settings().webhook_ack_invalid_signature:
            return {"status": "ignored", "reason": "invalid_signature"}
        return JSONResponse(status_code=400, content={"detail": exc.message, "error": "InvalidSignature"})

    return {"status": "ok", "result": result.to_dict()}
