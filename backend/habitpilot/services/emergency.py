"""Last-chance reply used when a mode handler fails."""
from __future__ import annotations

import logging
from typing import Optional

from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode

logger = logging.getLogger(__name__)

OUTAGE_TEMPLATE = "Je te réponds dès que je peux, je dois gérer une urgence pour le moment."

EMERGENCY_SYSTEM_PROMPT = """
Tu es un coach d'habitudes.
Contrainte: le système a eu un souci temporaire, mais tu DOIS quand même répondre utilement et naturellement.

RÈGLES:
- Français, tutoiement.
- Ne mentionne pas d'erreur technique et ne demande pas de renvoyer le message.
- Réponse courte (6 lignes maximum). Une question au maximum.
- Si un bilan est en cours: ne pars pas sur un autre sujet, garde le fil.
- Si un sujet reporté est en cours: traite-le, ne propose jamais de reprendre le bilan.

CONTEXTE:
- mode={mode}
- bilan_en_cours={checkup_active}
- sujet_reporte_en_cours={post_checkup}
""".strip()


class EmergencyResponder:
    """Generates one generic reply with a low temperature; raises on failure."""

    def __init__(self, llm: Optional[LLMClient]) -> None:
        self.llm = llm

    def reply(self, message: str, mode: AgentMode, *, checkup_active: bool, post_checkup: bool) -> str:
        if self.llm is None:
            raise RuntimeError("no LLM client configured for emergency replies")
        system_prompt = EMERGENCY_SYSTEM_PROMPT.format(
            mode=mode.value,
            checkup_active="oui" if checkup_active else "non",
            post_checkup="oui" if post_checkup else "non",
        )
        text = self.llm.generate(system_prompt, message, temperature=0.2, operation="dispatcher.emergency_reply")
        if not text.strip():
            raise RuntimeError("emergency reply was empty")
        logger.info("Emergency reply produced for mode %s", mode.value)
        return text.strip()
