"""Domain exception taxonomy.

Each class maps to one handling policy:

* ``ClassificationFailure``: the turn falls back to companion mode at risk 0.
* ``HandlerFailure`` / ``CollaboratorTimeout``: emergency reply, then a retry
  job and the outage template.
* ``VerifierFailure``: the draft passes through unchanged.
* ``RateLimited``: the outbound item stays pending for the next tick.
* ``NotOptedIn`` / ``InvalidRecipient``: fall back to the in-app transcript.
* ``JobPermanentFailure``: the job is marked failed without further retries.
"""
from __future__ import annotations


class HabitPilotError(Exception):
    """Base class for service errors."""


class ClassificationFailure(HabitPilotError):
    pass


class HandlerFailure(HabitPilotError):
    def __init__(self, mode: str, message: str = "handler failed") -> None:
        super().__init__(f"{mode}: {message}")
        self.mode = mode


class CollaboratorTimeout(HabitPilotError):
    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_seconds:.1f}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class VerifierFailure(HabitPilotError):
    pass


class LLMUnavailable(HabitPilotError):
    """Raised when no configured model produced a completion."""


class OutboundError(HabitPilotError):
    """Base class for outbound channel errors."""

    code = "outbound_error"


class RateLimited(OutboundError):
    code = "rate_limited"


class NotOptedIn(OutboundError):
    code = "not_opted_in"


class InvalidRecipient(OutboundError):
    code = "invalid_recipient"


class JobPermanentFailure(HabitPilotError):
    """Raised by a job handler when retrying can never succeed."""
