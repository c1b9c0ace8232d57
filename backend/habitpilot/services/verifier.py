"""Reply verification during a checkup and during the post-checkup parking lot.

A draft is first normalized mechanically. If rule checks still find
violations, a single LLM judge+rewrite pass is attempted. Verification never
blocks a turn: any internal error returns the original draft.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from habitpilot.core.errors import VerifierFailure
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import annotate, trace
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode
from habitpilot.services.routing.text import fold

logger = logging.getLogger(__name__)

VARIANT_CHECKUP = "checkup"
VARIANT_POST_CHECKUP = "post_checkup"

REWRITE_SLACK_CHARS = 80

MAX_CHARS = {
    AgentMode.ARCHITECT: 650,
    AgentMode.FIREFIGHTER: 500,
    AgentMode.COMPANION: 750,
}
DEFAULT_MAX_CHARS = 750
ARCHITECT_DETAIL_MAX_CHARS = 1400

_BOLD = re.compile(r"\*\*")
_LITERAL_NEWLINE = re.compile(r"\\n")
_BLANK_LINES = re.compile(r"\n{3,}")
_TECH_TERMS = re.compile(r"\b(logs?|input|database|json|variable|schema|sql|table|endpoint|api)\b", re.IGNORECASE)
_DETAIL_REQUEST = re.compile(
    r"\b(details?|detaille|explique|pourquoi|comment|developpe|plus en detail|tu peux preciser|precise)\b"
)
_TOOL_CLAIM = re.compile(
    r"\b(j'ai|je viens de|je vais|je peux) (?:l')?(?:activer|active|creer|cree|ajouter|mettre a jour|modifier|"
    r"archiver|supprimer|enregistrer|noter)\b|\bc'est (?:fait|valide|enregistre)\b|\b(outil|tool)\b"
)
_RESUME_QUESTION = re.compile(
    r"\b(on continue|on passe a la suite|pret pour la suite|on continue le bilan|on fait la suite)\b"
)
_AI_DISCLAIMER = re.compile(r"\bje suis une? ia\b")
_AFTER_CHECKUP = re.compile(r"\bapres le bilan\b")
_CONTINUE_VERB = re.compile(r"\b(continue(?:r)?|reprend(?:re)?|reprenons|on continue|on reprend)\b")
_CHECKUP_WORD = re.compile(r"\b(bilan|check(?:up)?)\b")
_FINISH_CHECKUP = re.compile(r"\b(terminee?r? (?:le )?bilan|on termine (?:le )?bilan|finissons (?:le )?bilan)\b")
_PLAN_PUSH = re.compile(
    r"\b(suite de ton plan|dans ton plan|prochaines? actions?|frameworks?|phases?|objectifs?)\b"
)
_ASKS_QUESTION = re.compile(
    r"\b(est-ce que|qu'est-ce que|pourquoi|comment|peux-tu|peux tu|tu peux|tu voudrais|ca te dirait)\b"
)
_CLOSING_HINT = re.compile(
    r"\b(on commence|on peut commencer|ok|d'accord|parfait|merci|en resume|pour recapituler|l'idee c'est)\b"
)
_DONE_QUESTION = re.compile(r"\bc'est bon pour ce point\b")


def normalize_chat_text(text: str) -> str:
    """Strip markdown bold and collapse runs of blank lines; idempotent."""
    value = _LITERAL_NEWLINE.sub("\n", str(text or ""))
    value = _BOLD.sub("", value)
    return _BLANK_LINES.sub("\n\n", value).strip()


def checkup_violations(text: str, mode: AgentMode, user_message: Optional[str] = None) -> List[str]:
    folded = fold(text)
    violations: List[str] = []
    if not text.strip():
        return ["empty_response"]
    if _TECH_TERMS.search(text):
        violations.append("internal_tech_terms")
    if text.count("?") > 1:
        violations.append("too_many_questions")
    max_chars = MAX_CHARS.get(mode, DEFAULT_MAX_CHARS)
    if mode is AgentMode.ARCHITECT and _DETAIL_REQUEST.search(fold(user_message)):
        max_chars = ARCHITECT_DETAIL_MAX_CHARS
    if len(text) > max_chars:
        violations.append("too_long")
    if _TOOL_CLAIM.search(folded):
        violations.append("tool_claim_outside_interview")
    if not _RESUME_QUESTION.search(folded):
        violations.append("missing_resume_question")
    return violations


def post_checkup_violations(text: str) -> List[str]:
    folded = fold(text)
    violations: List[str] = []
    if not text.strip():
        return ["empty_response"]
    if _TECH_TERMS.search(text):
        violations.append("internal_tech_terms")
    if _AI_DISCLAIMER.search(folded):
        violations.append("unnecessary_ai_disclaimer")
    if _AFTER_CHECKUP.search(folded):
        violations.append("mentions_after_checkup")
    if _CONTINUE_VERB.search(folded) and _CHECKUP_WORD.search(folded):
        violations.append("mentions_continue_checkup")
    if _FINISH_CHECKUP.search(folded):
        violations.append("mentions_finish_checkup")
    if _PLAN_PUSH.search(folded):
        violations.append("plan_push")
    asks_question = folded.rstrip().endswith("?") or bool(_ASKS_QUESTION.search(folded))
    if _CLOSING_HINT.search(folded) and not asks_question and not _DONE_QUESTION.search(folded):
        violations.append("missing_done_question")
    return violations


@dataclass
class VerificationResult:
    text: str
    rewritten: bool = False
    violations: List[str] = field(default_factory=list)


JUDGE_SYSTEM_PROMPT = (
    "Tu es un contrôleur qualité pour un coach d'habitudes. Tu reçois un brouillon de réponse et une liste "
    "de violations détectées. Corrige uniquement ces problèmes sans changer le fond, en français, tutoiement, "
    "texte brut, une question au maximum, sans termes techniques internes, sans rallonger inutilement. "
    'Réponds en JSON strict: {"ok": bool, "issues": [..], "final_text": "..."}.'
)

VARIANT_RULES = {
    VARIANT_CHECKUP: (
        "Un bilan est en cours et ce n'est pas toi qui le mènes: réponds brièvement puis termine par une "
        'courte question pour reprendre le bilan, par exemple "On continue ?". Ne prétends jamais avoir '
        "enregistré ou modifié quoi que ce soit."
    ),
    VARIANT_POST_CHECKUP: (
        'Le bilan est terminé. Ne dis jamais "après le bilan", ne propose pas de continuer ou reprendre le '
        "bilan, ne pousse pas le plan. Termine par \"C'est bon pour ce point ?\" seulement si tu conclus le sujet."
    ),
}


class Verifier:
    def __init__(self, llm: Optional[LLMClient]) -> None:
        self.llm = llm

    def verify(
        self,
        draft: str,
        mode: AgentMode,
        state_snapshot: Optional[Dict[str, Any]] = None,
        *,
        variant: str = VARIANT_CHECKUP,
        user_message: Optional[str] = None,
    ) -> str:
        try:
            return self.check(draft, mode, state_snapshot, variant=variant, user_message=user_message).text
        except Exception:
            logger.exception("Verifier failed for mode %s; keeping the draft", mode.value)
            log_metric("verifier.failure", 1, metadata={"mode": mode.value, "variant": variant})
            return draft

    def check(
        self,
        draft: str,
        mode: AgentMode,
        state_snapshot: Optional[Dict[str, Any]] = None,
        *,
        variant: str = VARIANT_CHECKUP,
        user_message: Optional[str] = None,
    ) -> VerificationResult:
        base = normalize_chat_text(draft)
        if variant == VARIANT_POST_CHECKUP:
            violations = post_checkup_violations(base)
        else:
            violations = checkup_violations(base, mode, user_message)
        if not violations:
            return VerificationResult(text=base)

        with trace(
            f"verifier.{variant}",
            metadata={"mode": mode.value, "violations": violations, "draft_length": len(base)},
        ) as span:
            rewritten = self._rewrite(base, mode, variant, violations, state_snapshot, user_message)
            annotate(span, rewritten=rewritten is not None)
        if rewritten is None:
            return VerificationResult(text=base, violations=violations)
        log_metric("verifier.rewrite", 1, metadata={"mode": mode.value, "variant": variant})
        return VerificationResult(text=rewritten, rewritten=True, violations=violations)

    def _rewrite(
        self,
        base: str,
        mode: AgentMode,
        variant: str,
        violations: List[str],
        state_snapshot: Optional[Dict[str, Any]],
        user_message: Optional[str],
    ) -> Optional[str]:
        if self.llm is None:
            return None
        user_prompt = json.dumps(
            {
                "variant": variant,
                "agent": mode.value,
                "rules": VARIANT_RULES.get(variant, ""),
                "mechanical_violations": violations,
                "user_message": user_message or "",
                "state": state_snapshot or {},
                "draft": base,
            },
            ensure_ascii=False,
        )
        try:
            payload = self.llm.generate_json(
                JUDGE_SYSTEM_PROMPT,
                user_prompt,
                temperature=0.1,
                operation=f"verifier.{variant}.rewrite",
            )
        except Exception as exc:
            raise VerifierFailure(str(exc)) from exc

        candidate = normalize_chat_text(str(payload.get("final_text") or ""))
        if not candidate or candidate == base:
            return None
        limit = len(base) - 1 if "too_long" in violations else len(base) + REWRITE_SLACK_CHARS
        if len(candidate) > limit:
            logger.info("Discarding verifier rewrite (%s chars > %s allowed)", len(candidate), limit)
            return None
        return candidate
