"""LLM-backed message classification into a mode and a risk score."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from habitpilot.core.errors import ClassificationFailure
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode
from habitpilot.services.state_store import ConversationSnapshot

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = (
    "Tu es le dispatcher d'un coach d'habitudes. Analyse le dernier message de l'utilisateur et choisis "
    "le mode de réponse le plus adapté parmi: sentry (danger vital, idées suicidaires, violence), "
    "firefighter (crise émotionnelle, panique, détresse), investigator (bilan quotidien, suivi des actions), "
    "architect (planification, organisation, objectifs), assistant (problème technique avec l'application), "
    "companion (conversation générale). Évalue aussi un risque de 0 (aucun) à 10 (danger immédiat). "
    'Réponds uniquement en JSON: {"mode": "...", "risk": 0}.'
)


@dataclass(frozen=True)
class ClassifierResult:
    mode: AgentMode
    risk_score: int


FAIL_OPEN_RESULT = ClassifierResult(mode=AgentMode.COMPANION, risk_score=0)


class IntentClassifier:
    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm

    def classify(
        self,
        message: str,
        state: ConversationSnapshot,
        last_assistant_text: Optional[str] = None,
    ) -> ClassifierResult:
        user_prompt = json.dumps(
            {
                "current_mode": state.current_mode.value,
                "risk_level": state.risk_level,
                "checkup_active": state.investigation_state is not None
                and not (state.investigation_state or {}).get("status"),
                "last_assistant_message": (last_assistant_text or "")[:600],
                "user_message": message,
            },
            ensure_ascii=False,
        )
        try:
            payload = self.llm.generate_json(
                CLASSIFIER_SYSTEM_PROMPT,
                user_prompt,
                temperature=0.0,
                operation="dispatcher.classify",
            )
        except Exception as exc:
            raise ClassificationFailure(str(exc)) from exc
        return parse_classifier_payload(payload)


def parse_classifier_payload(payload: dict) -> ClassifierResult:
    try:
        mode = AgentMode.parse(payload.get("mode") or payload.get("target_mode"))
    except ValueError as exc:
        raise ClassificationFailure(str(exc)) from exc
    raw_risk = payload.get("risk", payload.get("risk_score", 0))
    try:
        risk = int(raw_risk)
    except (TypeError, ValueError):
        risk = 0
    return ClassifierResult(mode=mode, risk_score=max(0, min(10, risk)))
