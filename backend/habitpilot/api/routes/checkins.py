"""Proactive check-in scheduling endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from habitpilot.api.schemas.checkins import CheckinPreviewResponse, CheckinRequest, CheckinResponse
from habitpilot.core.config import settings
from habitpilot.db.deps import get_db
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace
from habitpilot.services.scheduling.clock import compute_scheduled_for_from_local
from habitpilot.services.scheduling.orchestrator import schedule_message
from habitpilot.services.user_service import get_or_create_user

router = APIRouter()


@router.post("/checkins", response_model=CheckinResponse, tags=["checkins"])
def create_checkin(request: Request, payload: CheckinRequest, db: Session = Depends(get_db)) -> CheckinResponse:
    """Schedule a proactive check-in at a local time; repeated calls are idempotent."""
    request_id = getattr(request.state, "request_id", None)
    user = get_or_create_user(db, payload.user_id)
    db.commit()
    with trace(
        "checkins.schedule",
        metadata={"event_context": payload.event_context, "local_time": payload.local_time},
        user_id=str(payload.user_id),
        request_id=request_id,
    ):
        try:
            scheduled_for = compute_scheduled_for_from_local(user.timezone, payload.day_offset, payload.local_time)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        created = schedule_message(
            db,
            user_id=payload.user_id,
            event_context=payload.event_context,
            scheduled_for=scheduled_for,
            draft_message=payload.draft_message,
            payload={"source": "api", "request_id": request_id},
        )
    log_metric("checkins.scheduled", 1 if created else 0, metadata={"event_context": payload.event_context})
    return CheckinResponse(
        user_id=payload.user_id,
        event_context=payload.event_context,
        scheduled_for=scheduled_for.replace(second=0, microsecond=0),
        created=created,
        request_id=request_id or "",
    )


@router.get("/checkins/preview", response_model=CheckinPreviewResponse, tags=["checkins"])
def preview_checkin(
    request: Request,
    local_time: str = Query(..., description="HH:MM"),
    timezone: Optional[str] = Query(None),
    day_offset: int = Query(0, ge=0, le=30),
    now: Optional[datetime] = Query(None, description="Reference instant, defaults to the current time"),
) -> CheckinPreviewResponse:
    request_id = getattr(request.state, "request_id", None)
    tz_name = timezone or settings.default_timezone
    with trace("checkins.preview", metadata={"timezone": tz_name, "local_time": local_time}, request_id=request_id):
        try:
            scheduled_for = compute_scheduled_for_from_local(tz_name, day_offset, local_time, now=now)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return CheckinPreviewResponse(
        timezone=tz_name,
        local_time=local_time,
        day_offset=day_offset,
        scheduled_for=scheduled_for,
        request_id=request_id or "",
    )
