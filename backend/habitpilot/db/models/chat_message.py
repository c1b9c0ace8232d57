"""Chat transcript ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.core.timeutils import utcnow
from habitpilot.db.base import Base
from habitpilot.db.types import JSONBCompat, UTCDateTime


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_user_scope_created", "user_id", "scope", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    scope = Column(String(64), nullable=False, default="web")
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    agent_used = Column(String(32), nullable=True)
    channel = Column(String(32), nullable=False, default="web")
    is_proactive = Column(Boolean, nullable=False, default=False, server_default=sa_text("false"))
    metadata_json = Column("metadata", JSONBCompat, nullable=False, default=dict)
    # Set client-side so rows written in the same second keep their order.
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
