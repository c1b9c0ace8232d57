"""Outbound sender factory."""
from __future__ import annotations

import logging
from functools import lru_cache

from habitpilot.core.config import settings
from habitpilot.services.notifications.base import OutboundChannelSender
from habitpilot.services.notifications.noop import NoopOutboundSender

logger = logging.getLogger(__name__)


@lru_cache
def get_outbound_sender() -> OutboundChannelSender:
    provider = settings.notifications_provider.lower()
    if provider != "noop":
        logger.warning("Unknown outbound provider %r; using noop", provider)
    return NoopOutboundSender()
