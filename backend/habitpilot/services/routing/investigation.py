"""Accessors over the JSON investigation state."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from habitpilot.services.routing.deferred_topics import deferred_topics

POST_CHECKUP = "post_checkup"
POST_CHECKUP_DONE = "post_checkup_done"

InvestigationState = Optional[Dict[str, Any]]


def status_of(state: InvestigationState) -> Optional[str]:
    if not state:
        return None
    return state.get("status") or None


def is_interview_active(state: InvestigationState) -> bool:
    """An interview is in progress when a state exists without a status."""
    return state is not None and status_of(state) is None


def is_parking_lot_open(state: InvestigationState) -> bool:
    return status_of(state) == POST_CHECKUP


def is_parking_lot_terminal(state: InvestigationState) -> bool:
    return status_of(state) in (POST_CHECKUP, POST_CHECKUP_DONE)


def topic_index(state: InvestigationState) -> int:
    memory = (state or {}).get("temp_memory") or {}
    try:
        return max(0, int(memory.get("current_topic_index") or 0))
    except (TypeError, ValueError):
        return 0


def topics(state: InvestigationState) -> List[str]:
    return deferred_topics(state)


def new_interview_state(started_at: str) -> Dict[str, Any]:
    return {
        "started_at": started_at,
        "turns": 0,
        "temp_memory": {"deferred_topics": [], "current_topic_index": 0},
    }


def parking_lot_state(topic_list: List[str], index: int = 0, *, status: str = POST_CHECKUP) -> Dict[str, Any]:
    return {
        "status": status,
        "temp_memory": {"deferred_topics": list(topic_list), "current_topic_index": index},
    }
