"""Schemas for the chat turn endpoint."""
from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class HistoryItem(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatTurnRequest(BaseModel):
    user_id: UUID
    message: str = Field(..., min_length=1, max_length=4000)
    scope: str = Field("web", min_length=1, max_length=64)
    channel: str = Field("web", max_length=32)
    recent_history: Optional[List[HistoryItem]] = None


class ChatTurnResponse(BaseModel):
    reply: str
    mode: str
    degraded: bool
    reasons: List[str] = Field(default_factory=list)
    request_id: str
