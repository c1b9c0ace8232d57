"""Conversation state ORM model."""
from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.db.base import Base
from habitpilot.db.types import JSONBCompat, UTCDateTime


class ConversationState(Base):
    """One row per (user, scope); ``version`` guards compare-and-swap writes."""

    __tablename__ = "conversation_states"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    scope = Column(String(64), primary_key=True, default="web")
    current_mode = Column(String(32), nullable=False, default="companion")
    risk_level = Column(Integer, nullable=False, default=0)
    investigation_state = Column(JSONBCompat, nullable=True)
    short_term_context = Column(Text, nullable=True)
    unprocessed_msg_count = Column(Integer, nullable=False, default=0)
    last_processed_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now())
