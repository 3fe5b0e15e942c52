"""Account model: per-user credit balance and free-trial counters."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from tryon.db.base import Base


class Account(Base):
    """Mutated only through CreditLedger, each change paired with a LedgerEntry."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="credits_non_negative"),
        CheckConstraint("free_trials_used >= 0", name="free_trials_used_non_negative"),
        CheckConstraint("free_trials_used <= free_trials_limit", name="free_trials_within_limit"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Contact (anonymous accounts have none until a checkout supplies one)
    email = Column(String(255), unique=True, nullable=True, index=True)
    is_anonymous = Column(Boolean, nullable=False, default=True)

    # Balance
    credits = Column(Integer, nullable=False, default=0)
    free_trials_used = Column(Integer, nullable=False, default=0)
    free_trials_limit = Column(Integer, nullable=False, default=1)

    total_generations = Column(Integer, nullable=False, default=0)
    last_generation_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def free_trials_remaining(self) -> int:
        return max(0, self.free_trials_limit - self.free_trials_used)
