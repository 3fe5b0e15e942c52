"""Payment gateway adapters: signature verification and event normalization.

Each gateway turns a raw webhook delivery (bytes + headers) into a
gateway-neutral ``PaymentEvent``. Verification always runs against the raw
body; the payload is only parsed once the signature checks out.

- Stripe: ``stripe.Webhook.construct_event``
- Polar: ``standardwebhooks.Webhook``
- Paddle: ``Paddle-Signature: ts=...;h1=...``
"""

import base64
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import stripe
import structlog
from standardwebhooks.webhooks import Webhook, WebhookVerificationError

from tryon.core.exceptions import InvalidSignature

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VerifiedDelivery:
    payload: dict[str, Any]
    delivery_id: str | None = None


@dataclass(frozen=True)
class PaymentEvent:
    """Gateway-neutral view of one verified webhook event.

    ``credits`` is left as sent; the reconciler decides whether it is usable.
    """

    gateway: str
    event_id: str
    event_type: str
    is_payment: bool
    order_id: str | None = None
    account_id: str | None = None
    credits: Any = None
    customer_email: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidSignature(f"Payload is not valid JSON: {exc}") from None
    if not isinstance(payload, dict):
        raise InvalidSignature("Payload is not a JSON object")
    return payload


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


class PaymentGateway(ABC):
    name: str = ""

    def __init__(self, secret: str, tolerance_seconds: int = 300):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    @abstractmethod
    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedDelivery:
        """Check the signature and parse the payload.

        Raises:
            InvalidSignature: on a missing/bad signature or stale timestamp
        """

    @abstractmethod
    def normalize(self, delivery: VerifiedDelivery) -> PaymentEvent:
        """Map a verified payload onto PaymentEvent."""

    def _check_timestamp(self, timestamp: str) -> None:
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            raise InvalidSignature("Invalid webhook timestamp") from None
        if abs(time.time() - sent_at) > self.tolerance_seconds:
            raise InvalidSignature("Webhook timestamp outside tolerance")


class StripeGateway(PaymentGateway):
    """Checkout Sessions created by /api/billing/checkout carry user_id and credits in metadata."""

    name = "stripe"
    PAID_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}

    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedDelivery:
        sig_header = _lower_headers(headers).get("stripe-signature")
        if not sig_header:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(body, sig_header, self.secret, tolerance=self.tolerance_seconds)
        except ValueError:
            raise InvalidSignature("Invalid payload") from None
        except stripe.SignatureVerificationError:
            raise InvalidSignature("Invalid signature") from None
        return VerifiedDelivery(payload=_parse_json(body))

    def normalize(self, delivery: VerifiedDelivery) -> PaymentEvent:
        payload = delivery.payload
        event_type = payload.get("type", "")
        data = (payload.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}
        customer = data.get("customer_details") or {}
        return PaymentEvent(
            gateway=self.name,
            event_id=str(payload.get("id", "")),
            event_type=event_type,
            is_payment=event_type in self.PAID_EVENTS and data.get("payment_status") == "paid",
            order_id=data.get("id"),
            account_id=_first(metadata, "user_id", "userId") or data.get("client_reference_id"),
            credits=_first(metadata, "credits", "planCredits"),
            customer_email=customer.get("email") or data.get("customer_email"),
            raw=payload,
        )


class PolarGateway(PaymentGateway):
    """Standard Webhooks signing (``webhook-id``/``webhook-timestamp``/``webhook-signature``).

    Polar hands out the raw signing secret; ``whsec_`` secrets are already
    base64 and are passed through unchanged.
    """

    name = "polar"
    PAID_EVENTS = {"order.created", "order.updated", "order.paid"}

    def _webhook(self) -> Webhook:
        if self.secret.startswith("whsec_"):
            return Webhook(self.secret)
        return Webhook(base64.b64encode(self.secret.encode()).decode())

    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedDelivery:
        lowered = _lower_headers(headers)
        self._check_timestamp(lowered.get("webhook-timestamp", ""))
        webhook = self._webhook()
        try:
            payload = webhook.verify(body, lowered)
        except WebhookVerificationError as exc:
            raise InvalidSignature(str(exc) or "Invalid signature") from None
        except ValueError:
            raise InvalidSignature("Payload is not valid JSON") from None
        if not isinstance(payload, dict):
            raise InvalidSignature("Payload is not a JSON object")
        return VerifiedDelivery(payload=payload, delivery_id=lowered["webhook-id"])

    def normalize(self, delivery: VerifiedDelivery) -> PaymentEvent:
        payload = delivery.payload
        event_type = payload.get("type", "")
        data = payload.get("data") or {}
        metadata = data.get("metadata") or {}
        customer = data.get("customer") or {}
        return PaymentEvent(
            gateway=self.name,
            event_id=delivery.delivery_id or str(data.get("id", "")),
            event_type=event_type,
            is_payment=event_type in self.PAID_EVENTS and data.get("status") == "paid",
            order_id=data.get("id"),
            account_id=_first(metadata, "userId", "user_id"),
            credits=_first(metadata, "planCredits", "credits"),
            customer_email=customer.get("email"),
            raw=payload,
        )


class PaddleGateway(PaymentGateway):
    """HMAC-SHA256 hex over ``{ts}:{body}``, sent as ``Paddle-Signature: ts=...;h1=...``."""

    name = "paddle"
    PAID_EVENTS = {"transaction.completed"}

    def sign(self, timestamp: str, body: bytes) -> str:
        signed = f"{timestamp}:".encode() + body
        return hmac.new(self.secret.encode(), signed, hashlib.sha256).hexdigest()

    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedDelivery:
        signature_header = _lower_headers(headers).get("paddle-signature", "")
        if not signature_header:
            raise InvalidSignature("Missing Paddle-Signature header")

        timestamp = None
        signatures: list[str] = []
        for part in signature_header.split(";"):
            key, _, value = part.strip().partition("=")
            if key == "ts":
                timestamp = value
            elif key == "h1":
                signatures.append(value)
        if not timestamp or not signatures:
            raise InvalidSignature("Malformed Paddle-Signature header")
        self._check_timestamp(timestamp)

        expected = self.sign(timestamp, body)
        if not any(hmac.compare_digest(sig, expected) for sig in signatures):
            raise InvalidSignature("Invalid signature")
        return VerifiedDelivery(payload=_parse_json(body))

    def normalize(self, delivery: VerifiedDelivery) -> PaymentEvent:
        payload = delivery.payload
        event_type = payload.get("event_type", "")
        data = payload.get("data") or {}
        custom_data = data.get("custom_data") or {}
        return PaymentEvent(
            gateway=self.name,
            event_id=str(payload.get("event_id", "")),
            event_type=event_type,
            is_payment=event_type in self.PAID_EVENTS,
            order_id=data.get("id"),
            account_id=_first(custom_data, "user_id", "userId"),
            credits=_first(custom_data, "credits", "planCredits"),
            customer_email=_first(custom_data, "email", "customer_email"),
            raw=payload,
        )


def build_gateways(settings) -> dict[str, PaymentGateway]:
    """All known gateways, configured or not; the webhook route 404s unconfigured ones."""
    tolerance = settings.webhook_tolerance_seconds
    return {
        gateway.name: gateway
        for gateway in (
            StripeGateway(settings.stripe_webhook_secret, tolerance),
            PolarGateway(settings.polar_webhook_secret, tolerance),
            PaddleGateway(settings.paddle_webhook_secret, tolerance),
        )
    }
