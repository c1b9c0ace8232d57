"""Post-checkup parking lot: revisit deferred topics one at a time."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from habitpilot.services.modes import AgentMode
from habitpilot.services.routing import patterns
from habitpilot.services.routing.investigation import (
    POST_CHECKUP,
    POST_CHECKUP_DONE,
    is_parking_lot_open,
    parking_lot_state,
    topic_index,
    topics,
)

CLOSING_QUESTION = "C'est bon pour ce point ?"


@dataclass(frozen=True)
class ParkingLotOutcome:
    mode: AgentMode
    investigation_state: Optional[Dict[str, Any]]
    directive: Optional[str]
    reason: str
    closed: bool = False


def step(state: Optional[Dict[str, Any]], message: str, *, stop_requested: bool) -> Optional[ParkingLotOutcome]:
    """Advance the parking lot for one user message.

    Returns None when the parking lot is not open. Every open state yields
    exactly one outcome.

    The first affirmation answers the announcement and opens topic 1; each
    later one closes the current topic. N topics therefore take N + 1
    affirmations, and the last one closes the parking lot.
    """
    if not is_parking_lot_open(state):
        return None

    topic_list = topics(state)
    index = min(topic_index(state), len(topic_list))
    memory = dict((state or {}).get("temp_memory") or {})

    if stop_requested:
        return ParkingLotOutcome(AgentMode.COMPANION, None, None, "parking_lot_stopped", closed=True)

    if not topic_list:
        return _close(topic_list, index, "parking_lot_empty")

    if memory.get("awaiting_confirmation") and patterns.user_signals_topic_done(message):
        # Affirmative answer to the announcement opens the current topic.
        return _handle_topic(topic_list, index, "parking_lot_topic_opened")

    if patterns.user_signals_topic_done(message):
        next_index = index + 1
        if next_index >= len(topic_list):
            return _close(topic_list, len(topic_list), "parking_lot_exhausted")
        return _handle_topic(topic_list, next_index, "parking_lot_advanced")

    if index >= len(topic_list):
        return _close(topic_list, len(topic_list), "parking_lot_exhausted")

    return _handle_topic(topic_list, index, "parking_lot_topic")


def topic_directive(topic: str, position: int, total: int) -> str:
    return (
        f"=== MODE POST-BILAN (SUJET REPORTÉ {position}/{total}) ===\n"
        f'SUJET À TRAITER MAINTENANT : "{topic}"\n'
        "CONSIGNE : C'est le moment d'en parler. Traite ce point.\n"
        "RÈGLES CRITIQUES :\n"
        "- Le bilan est DÉJÀ TERMINÉ.\n"
        '- Interdiction de dire "après le bilan" ou de proposer de continuer/reprendre le bilan.\n'
        "- Ne pose pas de questions de bilan sur d'autres actions.\n"
        "- Ne pousse pas le plan si l'utilisateur n'en parle pas.\n"
        f'VALIDATION : Termine par "{CLOSING_QUESTION}" UNIQUEMENT quand tu as donné ton conseil principal '
        "et que tu veux valider/avancer.\n"
        "NE LE RÉPÈTE PAS à chaque message si la discussion continue."
    )


def announce_first_topic(topic: str) -> str:
    return f"Ok, on a fini le bilan.\n\nTu voulais qu'on reparle de {topic}.\nOn en discute maintenant ?"


def opened_after_checkup(topic_list: list[str]) -> Dict[str, Any]:
    """State written when an interview completes with deferred topics."""
    state = parking_lot_state(topic_list, 0, status=POST_CHECKUP)
    state["temp_memory"]["awaiting_confirmation"] = True
    return state


def _handle_topic(topic_list: list[str], index: int, reason: str) -> ParkingLotOutcome:
    topic = topic_list[index]
    return ParkingLotOutcome(
        mode=patterns.mode_for_topic(topic),
        investigation_state=parking_lot_state(topic_list, index, status=POST_CHECKUP),
        directive=topic_directive(topic, index + 1, len(topic_list)),
        reason=reason,
    )


def _close(topic_list: list[str], index: int, reason: str) -> ParkingLotOutcome:
    return ParkingLotOutcome(
        mode=AgentMode.COMPANION,
        investigation_state=parking_lot_state(topic_list, index, status=POST_CHECKUP_DONE),
        directive=None,
        reason=reason,
        closed=True,
    )
