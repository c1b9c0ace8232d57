"""Conversational turn endpoint."""
from __future__ import annotations

from time import perf_counter

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from habitpilot.api.schemas.chat import ChatTurnRequest, ChatTurnResponse
from habitpilot.db.deps import get_db
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace
from habitpilot.services.dispatcher import Dispatcher, build_dispatcher

router = APIRouter()


def get_dispatcher(db: Session = Depends(get_db)) -> Dispatcher:
    return build_dispatcher(db)


@router.post("/chat/turn", response_model=ChatTurnResponse, tags=["chat"])
def post_chat_turn(
    payload: ChatTurnRequest,
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ChatTurnResponse:
    """Run one conversational turn and return the assistant reply."""
    request_id = getattr(request.state, "request_id", None)
    history = [item.model_dump() for item in payload.recent_history] if payload.recent_history is not None else None
    start = perf_counter()
    with trace(
        "chat.turn",
        metadata={"route": "/chat/turn", "scope": payload.scope, "message_length": len(payload.message)},
        user_id=str(payload.user_id),
        request_id=request_id,
    ):
        result = dispatcher.process_turn(
            payload.user_id,
            payload.scope,
            payload.message,
            history,
            channel=payload.channel,
            assistant_metadata={"request_id": request_id} if request_id else None,
        )
    log_metric("chat.turn.latency_ms", (perf_counter() - start) * 1000, metadata={"mode": result.resolved_mode.value})
    return ChatTurnResponse(
        reply=result.reply_text,
        mode=result.resolved_mode.value,
        degraded=result.degraded,
        reasons=result.reasons,
        request_id=request_id or "",
    )
