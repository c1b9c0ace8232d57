"""Main FastAPI application for the HabitPilot backend."""
from fastapi import FastAPI, Request

from habitpilot.api.routes.chat import router as chat_router
from habitpilot.api.routes.checkins import router as checkins_router
from habitpilot.api.routes.jobs import router as jobs_router
from habitpilot.api.routes.notifications import router as notifications_router
from habitpilot.core.config import settings
from habitpilot.core.logging import configure_logging
from habitpilot.core.middleware import RequestIDMiddleware
from habitpilot.observability.client import init_opik
from habitpilot.observability.tracing import trace

configure_logging(log_level=settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(RequestIDMiddleware)
app.include_router(chat_router)
app.include_router(jobs_router)
app.include_router(checkins_router)
app.include_router(notifications_router)


@app.on_event("startup")
async def startup_observability() -> None:
    """Initialize observability backends after the event loop starts."""
    init_opik()


@app.get("/health", tags=["health"], summary="Readiness probe")
async def health_check(request: Request) -> dict[str, str]:
    """Return a simple status payload so automation can probe the API."""
    with trace("http.health_check", metadata={"route": "/health"}, request_id=request.state.request_id):
        return {"status": "ok"}
