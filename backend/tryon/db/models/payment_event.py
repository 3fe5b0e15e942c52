"""PaymentEvent model: audit trail of verified webhook deliveries."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from tryon.db.base import Base


class PaymentEventRecord(Base):
    """One row per (gateway, event_id); redeliveries bump ``delivery_count``.

    Credit deduplication is keyed on ``LedgerEntry.order_id``, not on this table.
    """

    __tablename__ = "payment_events"

    gateway = Column(String(50), primary_key=True)
    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    order_id = Column(String(255), nullable=True, index=True)

    # received, credited, duplicate, ignored, malformed, failed
    status = Column(String(20), nullable=False, default="received")
    detail = Column(Text, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)

    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    processed_at = Column(DateTime(timezone=True), nullable=True)
