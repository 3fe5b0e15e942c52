"""LedgerEntry model: append-only record of every balance change."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from tryon.db.base import Base

REASON_FREE_TRIAL = "free_trial"
REASON_GENERATION = "generation_used"
REASON_PURCHASE = "purchase"


class LedgerEntry(Base):
    """Invariant: balance_after == balance_before + amount. Never updated or deleted.

    ``order_id`` is the payment gateway's dedup key; at most one entry per order.
    """

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(50), nullable=False)

    order_id = Column(String(255), unique=True, nullable=True)
    gateway = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
