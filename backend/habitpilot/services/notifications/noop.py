"""No-op outbound provider (logs only)."""
from __future__ import annotations

import logging
from uuid import uuid4

from habitpilot.core.errors import InvalidRecipient, NotOptedIn
from habitpilot.db.models.user import User
from habitpilot.services.notifications.base import DeliveryResult, OutboundChannelSender

logger = logging.getLogger(__name__)


class NoopOutboundSender(OutboundChannelSender):
    name = "noop"

    def send(self, user: User, message: str, *, request_id: str | None = None) -> DeliveryResult:
        if not user.opted_in:
            raise NotOptedIn(f"user {user.id} has not opted in")
        if user.phone_invalid or not user.phone_number:
            raise InvalidRecipient(f"user {user.id} has no valid phone number")
        delivery_id = f"noop-{uuid4().hex[:12]}"
        logger.info("Outbound message queued (noop) user=%s delivery=%s chars=%s", user.id, delivery_id, len(message))
        return DeliveryResult(status="noop", delivery_id=delivery_id, reason="outbound provider is noop")
