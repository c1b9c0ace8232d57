"""Centralized logging configuration for the API and the scheduler worker."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Dict

from habitpilot.core.context import get_request_id, get_user_id

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(process_label)s | %(name)s | %(request_id)s | %(user_id)s | %(message)s"

# Third-party loggers that are noisy at INFO.
QUIET_LOGGERS: Dict[str, str] = {
    "apscheduler": "WARNING",
    "httpx": "WARNING",
    "openai": "WARNING",
    "opik": "WARNING",
}


class ContextFilter(logging.Filter):
    """Tag records with the process label and the bound request and user ids.

    Jobs and proactive ticks have no request id; they bind the user id only.
    """

    def __init__(self, process_label: str = "api") -> None:
        super().__init__()
        self.process_label = process_label

    def filter(self, record: logging.LogRecord) -> bool:
        record.process_label = self.process_label
        record.request_id = get_request_id() or "-"
        record.user_id = get_user_id() or "-"
        return True


def configure_logging(*, log_level: str = "INFO", process_label: str = "api") -> None:
    """Configure logging once per process."""
    if getattr(configure_logging, "_configured", False):
        return

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "filters": {
                "context": {
                    "()": "habitpilot.core.logging.ContextFilter",
                    "process_label": process_label,
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": log_level,
                    "filters": ["context"],
                }
            },
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": {name: {"level": level} for name, level in QUIET_LOGGERS.items()},
        }
    )
    setattr(configure_logging, "_configured", True)
