"""Outbound channel interface."""
from __future__ import annotations

from dataclasses import dataclass

from habitpilot.db.models.user import User


@dataclass
class DeliveryResult:
    status: str
    delivery_id: str | None = None
    reason: str = ""


class OutboundChannelSender:
    """Base interface for outbound messaging providers.

    ``send`` returns a delivery result or raises ``RateLimited``,
    ``NotOptedIn`` or ``InvalidRecipient``.
    """

    name = "base"

    def send(self, user: User, message: str, *, request_id: str | None = None) -> DeliveryResult:
        raise NotImplementedError
