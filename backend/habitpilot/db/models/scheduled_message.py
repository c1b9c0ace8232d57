"""Proactive scheduled message ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.db.base import Base
from habitpilot.db.types import JSONBCompat, UTCDateTime

SCHEDULED_PENDING = "pending"
SCHEDULED_DEFERRED = "deferred"
SCHEDULED_SENT = "sent"
SCHEDULED_AWAITING_USER = "awaiting_user"
SCHEDULED_CANCELLED = "cancelled"


class ScheduledMessage(Base):
    __tablename__ = "scheduled_messages"
    __table_args__ = (
        UniqueConstraint("user_id", "event_context", "scheduled_for", name="uq_scheduled_messages_idempotency"),
        Index("ix_scheduled_messages_due", "status", "scheduled_for"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    event_context = Column(String(128), nullable=False)
    scheduled_for = Column(UTCDateTime, nullable=False)
    draft_message = Column(Text, nullable=True)
    message_payload = Column(JSONBCompat, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=SCHEDULED_PENDING)
    not_before = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
