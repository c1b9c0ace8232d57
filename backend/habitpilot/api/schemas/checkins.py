"""Schemas for proactive check-in endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CheckinRequest(BaseModel):
    user_id: UUID
    local_time: str = Field(..., description="Local wall-clock time, HH:MM")
    day_offset: int = Field(0, ge=0, le=30)
    event_context: str = Field("checkin", min_length=1, max_length=128)
    draft_message: Optional[str] = Field(None, max_length=2000)


class CheckinResponse(BaseModel):
    user_id: UUID
    event_context: str
    scheduled_for: datetime
    created: bool
    request_id: str


class CheckinPreviewResponse(BaseModel):
    timezone: str
    local_time: str
    day_offset: int
    scheduled_for: datetime
    request_id: str
