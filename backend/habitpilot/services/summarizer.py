"""Rolling short-term context summarizer, triggered from the turn path."""
from __future__ import annotations

import logging
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from habitpilot.observability.tracing import trace
from habitpilot.services.chat_log import messages_since
from habitpilot.services.handlers.prompting import ROLE_LABELS
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.state_store import StateStore

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 1500
MAX_TRANSCRIPT_MESSAGES = 60

SUMMARY_SYSTEM_PROMPT = (
    "Tu maintiens la mémoire de travail d'un coach d'habitudes. À partir du résumé précédent et des nouveaux "
    "messages, écris un résumé factuel et concis (10 lignes maximum) de ce qui compte pour la suite: humeur, "
    "actions en cours, difficultés, sujets promis pour plus tard. Pas de phrases d'introduction."
)


class ContextSummarizer:
    def __init__(self, llm: LLMClient, session_factory: Callable[[], Session]) -> None:
        self.llm = llm
        self.session_factory = session_factory

    def run(self, user_id: UUID, scope: str) -> Optional[str]:
        """Summarize messages since the last pass and release the processed count."""
        session = self.session_factory()
        try:
            with trace("summarizer.run", metadata={"scope": scope}, user_id=str(user_id)):
                return self._run(session, user_id, scope)
        finally:
            session.close()

    def _run(self, session: Session, user_id: UUID, scope: str) -> Optional[str]:
        store = StateStore(session)
        snapshot = store.load(user_id, scope)
        rows = messages_since(session, user_id, scope, snapshot.last_processed_at)
        if not rows:
            return None
        rows = rows[-MAX_TRANSCRIPT_MESSAGES:]
        transcript = "\n".join(f"{ROLE_LABELS.get(row.role, row.role)}: {row.content}" for row in rows)
        user_prompt = f"Résumé précédent:\n{snapshot.short_term_context or '(aucun)'}\n\nNouveaux messages:\n{transcript}"
        summary = self.llm.generate(
            SUMMARY_SYSTEM_PROMPT, user_prompt, temperature=0.2, operation="summarizer.generate"
        )[:MAX_SUMMARY_CHARS]

        processed = snapshot.unprocessed_msg_count
        processed_until = rows[-1].created_at

        def apply(current):
            current.short_term_context = summary
            current.unprocessed_msg_count = max(0, current.unprocessed_msg_count - processed)
            current.last_processed_at = processed_until
            return current

        written = store.mutate(user_id, scope, apply)
        if written is None:
            logger.info("Summary for %s/%s dropped; state changed underneath", user_id, scope)
            return None
        logger.info("Short-term context refreshed for %s/%s (%s messages)", user_id, scope, len(rows))
        return summary
