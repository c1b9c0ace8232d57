"""Conversation behavior modes."""
from __future__ import annotations

from enum import Enum


class AgentMode(str, Enum):
    SENTRY = "sentry"
    FIREFIGHTER = "firefighter"
    INVESTIGATOR = "investigator"
    ARCHITECT = "architect"
    COMPANION = "companion"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: object, default: "AgentMode | None" = None) -> "AgentMode":
        """Coerce a stored or model-produced value into a mode."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for mode in cls:
            if mode.value == text:
                return mode
        if default is None:
            raise ValueError(f"unknown mode: {value!r}")
        return default
