"""Background job queue ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from habitpilot.core.timeutils import utcnow
from habitpilot.db.base import Base
from habitpilot.db.types import JSONBCompat, UTCDateTime

JOB_PENDING = "pending"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class JobRecord(Base):
    __tablename__ = "job_queue"
    __table_args__ = (
        Index("ix_job_queue_claimable", "queue_name", "status", "next_attempt_at"),
        Index("ix_job_queue_user_id", "user_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    queue_name = Column(String(64), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    payload = Column(JSONBCompat, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=JOB_PENDING)
    locked_by = Column(Text, nullable=True)
    locked_at = Column(UTCDateTime, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=30)
    next_attempt_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now())
