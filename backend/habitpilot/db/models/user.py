"""User ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.db.base import Base
from habitpilot.db.types import UTCDateTime


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    timezone = Column(String(64), nullable=True)
    locale = Column(String(16), nullable=True)
    phone_number = Column(Text, nullable=True)
    opted_in = Column(Boolean, nullable=False, default=False, server_default=sa_text("false"))
    phone_invalid = Column(Boolean, nullable=False, default=False, server_default=sa_text("false"))
    last_inbound_at = Column(UTCDateTime, nullable=True)
    last_outbound_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
