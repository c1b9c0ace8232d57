"""Conversation state persistence with optimistic concurrency."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from habitpilot.db.models.conversation_state import ConversationState
from habitpilot.services.modes import AgentMode
from habitpilot.services.user_service import get_or_create_user

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "web"


@dataclass
class ConversationSnapshot:
    user_id: UUID
    scope: str
    current_mode: AgentMode
    risk_level: int
    investigation_state: Optional[Dict[str, Any]]
    short_term_context: Optional[str]
    unprocessed_msg_count: int
    last_processed_at: Optional[datetime]
    version: int

    def copy(self, **changes: Any) -> "ConversationSnapshot":
        """Return a detached copy; investigation_state is deep-copied."""
        clone = replace(self, investigation_state=copy.deepcopy(self.investigation_state))
        return replace(clone, **changes) if changes else clone


Mutator = Callable[[ConversationSnapshot], Optional[ConversationSnapshot]]


class StateStore:
    """Read and compare-and-swap write access to ``conversation_states``."""

    def __init__(self, db: Session, *, attempts: int = 3) -> None:
        self.db = db
        self.attempts = attempts

    def load(self, user_id: UUID, scope: str = DEFAULT_SCOPE) -> ConversationSnapshot:
        """Return the state for (user, scope), creating the row on first use."""
        row = self._fetch(user_id, scope)
        if row is None:
            row = self._create(user_id, scope)
        return _to_snapshot(row)

    def mutate(
        self,
        user_id: UUID,
        scope: str,
        mutator: Mutator,
        *,
        attempts: Optional[int] = None,
    ) -> Optional[ConversationSnapshot]:
        """Apply ``mutator`` to the latest state and write it if the version is unchanged.

        The mutator receives a detached snapshot and returns the desired state,
        or None to skip the write. Returns the written snapshot, the unchanged
        snapshot when skipped, or None when the row vanished or every attempt
        lost the race.
        """
        max_attempts = attempts or self.attempts
        for attempt in range(1, max_attempts + 1):
            row = self._fetch(user_id, scope)
            if row is None:
                logger.info("Conversation state %s/%s disappeared; abandoning update", user_id, scope)
                return None
            current = _to_snapshot(row)
            desired = mutator(current.copy())
            if desired is None:
                return current

            result = self.db.execute(
                update(ConversationState)
                .where(
                    ConversationState.user_id == user_id,
                    ConversationState.scope == scope,
                    ConversationState.version == current.version,
                )
                .values(
                    current_mode=AgentMode.parse(desired.current_mode).value,
                    risk_level=_clamp_risk(desired.risk_level),
                    investigation_state=desired.investigation_state,
                    short_term_context=desired.short_term_context,
                    unprocessed_msg_count=max(0, desired.unprocessed_msg_count),
                    last_processed_at=desired.last_processed_at,
                    version=current.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self.db.commit()
                return desired.copy(version=current.version + 1)

            self.db.rollback()
            logger.debug(
                "State write for %s/%s lost the version race (attempt %s/%s)",
                user_id,
                scope,
                attempt,
                max_attempts,
            )

        logger.warning("Giving up on state update for %s/%s after %s attempts", user_id, scope, max_attempts)
        return None

    def _fetch(self, user_id: UUID, scope: str) -> Optional[ConversationState]:
        stmt = (
            select(ConversationState)
            .where(ConversationState.user_id == user_id, ConversationState.scope == scope)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def _create(self, user_id: UUID, scope: str) -> ConversationState:
        get_or_create_user(self.db, user_id)
        row = ConversationState(
            user_id=user_id,
            scope=scope,
            current_mode=AgentMode.COMPANION.value,
            risk_level=0,
            investigation_state=None,
            unprocessed_msg_count=0,
            version=0,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._fetch(user_id, scope)
            if existing is not None:
                return existing
            raise
        return row


def _to_snapshot(row: ConversationState) -> ConversationSnapshot:
    return ConversationSnapshot(
        user_id=row.user_id,
        scope=row.scope,
        current_mode=AgentMode.parse(row.current_mode, default=AgentMode.COMPANION),
        risk_level=int(row.risk_level or 0),
        investigation_state=copy.deepcopy(row.investigation_state),
        short_term_context=row.short_term_context,
        unprocessed_msg_count=int(row.unprocessed_msg_count or 0),
        last_processed_at=row.last_processed_at,
        version=int(row.version or 0),
    )


def _clamp_risk(value: int) -> int:
    return max(0, min(10, int(value or 0)))
