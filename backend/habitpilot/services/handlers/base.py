"""Mode handler interface."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from habitpilot.services.modes import AgentMode


@dataclass
class HandlerContext:
    user_id: UUID
    scope: str
    message: str
    recent_history: List[Dict[str, str]] = field(default_factory=list)
    investigation_state: Optional[Dict[str, Any]] = None
    risk_level: int = 0
    short_term_context: Optional[str] = None
    directive: Optional[str] = None
    time_context: Optional[str] = None

    @property
    def last_assistant_text(self) -> Optional[str]:
        for item in reversed(self.recent_history):
            if item.get("role") == "assistant":
                return item.get("content")
        return None


@dataclass
class HandlerResult:
    reply: str
    investigation_state: Optional[Dict[str, Any]] = None
    updates_state: bool = False
    interview_complete: bool = False


class ModeHandler:
    """Base interface for per-mode reply generation."""

    mode: AgentMode

    def run(self, ctx: HandlerContext) -> HandlerResult:
        raise NotImplementedError
