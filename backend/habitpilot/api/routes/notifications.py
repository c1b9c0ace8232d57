"""Outbound channel configuration routes."""
from __future__ import annotations

from fastapi import APIRouter, Request

from habitpilot.core.config import settings
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace

router = APIRouter()


@router.get("/notifications/config", tags=["notifications"])
def get_notifications_config(request: Request) -> dict:
    request_id = getattr(request.state, "request_id", None)
    with trace(
        "notifications.config",
        metadata={"provider": settings.notifications_provider},
        request_id=request_id,
    ):
        log_metric("notifications.config.success", 1, metadata={"provider": settings.notifications_provider})
        return {
            "enabled": settings.notifications_enabled,
            "provider": settings.notifications_provider,
            "proactive": {
                "quiet_window_minutes": settings.quiet_window_minutes,
                "throttle_max_sends": settings.proactive_throttle_max_sends,
                "throttle_window_hours": settings.proactive_throttle_window_hours,
                "channel_window_hours": settings.channel_window_hours,
            },
            "request_id": request_id or "",
        }
