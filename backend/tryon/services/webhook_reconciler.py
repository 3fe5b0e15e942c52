"""WebhookReconciler: turn verified payment webhooks into ledger credits.

Per delivery: verify -> record -> filter -> deduplicate -> resolve -> apply.

Only InvalidSignature escapes ``reconcile``. Every other outcome (ignored,
duplicate, malformed, failed) is logged, recorded in payment_events and
returned as a ReconcileResult so the route can acknowledge the delivery and
the gateway stops retrying.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tryon.core.exceptions import (
    DuplicateEvent,
    InvalidSignature,
    MalformedEvent,
    TryOnError,
)
from tryon.db.models.payment_event import PaymentEventRecord
from tryon.integrations.payment_gateways import PaymentEvent, PaymentGateway
from tryon.services.accounts import AccountService
from tryon.services.credit_ledger import CreditLedger

logger = structlog.get_logger(__name__)

STATUS_CREDITED = "credited"
STATUS_DUPLICATE = "duplicate"
STATUS_IGNORED = "ignored"
STATUS_MALFORMED = "malformed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    gateway: str
    event_id: str
    status: str
    order_id: str | None = None
    account_id: str | None = None
    credits: int | None = None
    new_balance: int | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class WebhookReconciler:
    def __init__(
        self,
        gateways: Mapping[str, PaymentGateway],
        ledger: CreditLedger,
        accounts: AccountService,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.gateways = dict(gateways)
        self.ledger = ledger
        self.accounts = accounts
        self.session_factory = session_factory

    def gateway(self, name: str) -> PaymentGateway | None:
        """Configured gateway by name, or None."""
        gateway = self.gateways.get(name)
        if gateway is None or not gateway.configured:
            return None
        return gateway

    # ── Stages ──────────────────────────────────────────────────────

    def verify(self, gateway: PaymentGateway, body: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        try:
            delivery = gateway.verify(body, headers)
        except InvalidSignature as exc:
            logger.error("webhook_invalid_signature", gateway=gateway.name, reason=exc.message)
            raise
        return gateway.normalize(delivery)

    async def is_duplicate(self, order_id: str) -> bool:
        return await self.ledger.find_entry_by_order(order_id) is not None

    @staticmethod
    def resolve(event: PaymentEvent) -> tuple[str, str, int]:
        """Return (order_id, account_id, credits) or raise MalformedEvent."""
        if not event.order_id:
            raise MalformedEvent("Event has no order id")
        if not event.account_id:
            raise MalformedEvent("Event metadata has no account id")
        try:
            credits = int(str(event.credits).strip())
        except (TypeError, ValueError):
            raise MalformedEvent(f"Invalid credit quantity: {event.credits!r}") from None
        if credits <= 0:
            raise MalformedEvent(f"Invalid credit quantity: {credits}")
        return event.order_id, str(event.account_id), credits

    # ── Pipeline ────────────────────────────────────────────────────

    async def reconcile(self, gateway: PaymentGateway, body: bytes, headers: Mapping[str, str]) -> ReconcileResult:
        event = self.verify(gateway, body, headers)
        log = logger.bind(gateway=event.gateway, event_id=event.event_id, event_type=event.event_type)
        try:
            return await self._process(event, log)
        except Exception as exc:
            # Signed deliveries are always acknowledged; a failure is left for manual reconciliation
            log.error("webhook_processing_failed", error_type=type(exc).__name__, exc_info=True)
            return await self._finish(event, STATUS_FAILED, order_id=event.order_id, detail=type(exc).__name__)

    async def _process(self, event: PaymentEvent, log) -> ReconcileResult:
        await self._record_delivery(event)

        if not event.is_payment:
            log.info("webhook_event_ignored")
            return await self._finish(event, STATUS_IGNORED)

        try:
            order_id, account_id, credits = self.resolve(event)
            if await self.is_duplicate(order_id):
                raise DuplicateEvent(order_id)
        except DuplicateEvent as exc:
            log.info("webhook_duplicate_order", order_id=exc.order_id)
            return await self._finish(event, STATUS_DUPLICATE, order_id=exc.order_id)
        except MalformedEvent as exc:
            log.warning("webhook_malformed_event", reason=exc.message)
            return await self._finish(event, STATUS_MALFORMED, detail=exc.message)

        try:
            new_balance = await self.ledger.credit_account(
                account_id, credits, order_id=order_id, gateway=event.gateway
            )
        except TryOnError as exc:
            log.error(
                "webhook_credit_failed",
                order_id=order_id,
                account_id=account_id,
                error_type=type(exc).__name__,
                reason=exc.message,
            )
            return await self._finish(
                event, STATUS_FAILED, order_id=order_id, account_id=account_id, detail=exc.message
            )
        except Exception as exc:
            # Database or Redis outage
            log.error("webhook_credit_failed", order_id=order_id, account_id=account_id, exc_info=True)
            return await self._finish(
                event, STATUS_FAILED, order_id=order_id, account_id=account_id, detail=type(exc).__name__
            )

        log.info("webhook_credit_applied", order_id=order_id, account_id=account_id, credits=credits)
        if event.customer_email:
            await self._attach_contact(account_id, event.customer_email)

        return await self._finish(
            event,
            STATUS_CREDITED,
            order_id=order_id,
            account_id=account_id,
            credits=credits,
            new_balance=new_balance,
        )

    async def _attach_contact(self, account_id: str, email: str) -> None:
        """Best effort: never blocks or fails the credit that was just applied."""
        try:
            account = await self.accounts.get_account(account_id)
            if account.is_anonymous and not account.email:
                await self.accounts.attach_contact(account_id, email)
        except Exception as exc:
            logger.warning(
                "webhook_contact_attach_failed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # ── Audit trail ─────────────────────────────────────────────────

    async def _record_delivery(self, event: PaymentEvent) -> None:
        """Insert the payment_events row, or bump delivery_count on redelivery."""
        async with self.session_factory() as session:
            try:
                session.add(
                    PaymentEventRecord(
                        gateway=event.gateway,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        order_id=event.order_id,
                    )
                )
                await session.commit()
                return
            except IntegrityError:
                await session.rollback()

            await session.execute(
                update(PaymentEventRecord)
                .where(
                    PaymentEventRecord.gateway == event.gateway,
                    PaymentEventRecord.event_id == event.event_id,
                )
                .values(delivery_count=PaymentEventRecord.delivery_count + 1)
            )
            await session.commit()
            logger.info("webhook_redelivered", gateway=event.gateway, event_id=event.event_id)

    async def _finish(self, event: PaymentEvent, status: str, **fields) -> ReconcileResult:
        result = ReconcileResult(gateway=event.gateway, event_id=event.event_id, status=status, **fields)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(PaymentEventRecord)
                    .where(
                        PaymentEventRecord.gateway == event.gateway,
                        PaymentEventRecord.event_id == event.event_id,
                    )
                    .values(status=status, detail=result.detail, processed_at=datetime.now(UTC))
                )
                await session.commit()
        except Exception:
            # Audit row only; the ledger outcome above already stands
            logger.error("webhook_audit_update_failed", gateway=event.gateway, event_id=event.event_id, exc_info=True)
        return result
