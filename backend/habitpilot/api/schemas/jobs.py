"""Schemas for job operations endpoints."""
from __future__ import annotations

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class JobBatchRequest(BaseModel):
    queue: Literal["llm_retry", "eval_judge"]
    limit: Optional[int] = Field(None, ge=1)
    worker_id: Optional[str] = Field(None, max_length=128)


class JobBatchResponse(BaseModel):
    queue: str
    claimed: int
    completed: int
    rescheduled: int
    failed: int
    request_id: str


class EvalJobRequest(BaseModel):
    user_id: UUID
    scope: str = "web"
    reason: str = Field("manual", max_length=200)


class EvalJobResponse(BaseModel):
    job_id: UUID
    queue: str
    request_id: str
