"""Chat transcript helpers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from habitpilot.db.models.chat_message import ChatMessage

HISTORY_WINDOW = 20


def log_message(
    db: Session,
    *,
    user_id: UUID,
    scope: str,
    role: str,
    content: str,
    agent_used: Optional[str] = None,
    channel: str = "web",
    is_proactive: bool = False,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> ChatMessage:
    message = ChatMessage(
        user_id=user_id,
        scope=scope,
        role=role,
        content=content,
        agent_used=agent_used,
        channel=channel,
        is_proactive=is_proactive,
        metadata_json=metadata or {},
    )
    if created_at is not None:
        message.created_at = created_at
    db.add(message)
    return message


def load_recent_history(db: Session, user_id: UUID, scope: str, limit: int = HISTORY_WINDOW) -> List[Dict[str, str]]:
    """Return the last ``limit`` messages, oldest first, as role/content dicts."""
    rows = (
        db.execute(
            select(ChatMessage)
            .where(ChatMessage.user_id == user_id, ChatMessage.scope == scope)
            .order_by(ChatMessage.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [{"role": row.role, "content": row.content} for row in reversed(rows)]


def messages_since(db: Session, user_id: UUID, scope: str, since: Optional[datetime]) -> List[ChatMessage]:
    stmt = select(ChatMessage).where(ChatMessage.user_id == user_id, ChatMessage.scope == scope)
    if since is not None:
        stmt = stmt.where(ChatMessage.created_at > since)
    return list(db.execute(stmt.order_by(ChatMessage.created_at.asc())).scalars().all())


def last_assistant_text(history: List[Dict[str, str]]) -> Optional[str]:
    for item in reversed(history):
        if item.get("role") == "assistant":
            return item.get("content")
    return None
