"""Pending action ORM model (deferred sends and consent pings)."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, ForeignKey, Index, String, func
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.db.base import Base
from habitpilot.db.types import JSONBCompat, UTCDateTime

ACTION_PENDING = "pending"
ACTION_DONE = "done"
ACTION_EXPIRED = "expired"
ACTION_CANCELLED = "cancelled"

KIND_DEFERRED_SEND = "deferred_send"
KIND_AWAITING_USER = "awaiting_user"


class PendingAction(Base):
    __tablename__ = "pending_actions"
    __table_args__ = (Index("ix_pending_actions_due", "status", "kind", "not_before"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=ACTION_PENDING)
    payload = Column(JSONBCompat, nullable=False, default=dict)
    not_before = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
