"""Generation model: history of served try-on requests."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from tryon.db.base import Base


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)

    provider = Column(String(50), nullable=False)
    category = Column(String(20), nullable=False)  # upper_body, lower_body, dresses
    result_locator = Column(Text, nullable=False)
    fallback = Column(Boolean, nullable=False, default=False)

    was_free_trial = Column(Boolean, nullable=False, default=False)
    credits_used = Column(Integer, nullable=False, default=0)
    processing_ms = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), index=True)
