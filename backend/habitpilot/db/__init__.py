"""Database utilities and models."""

from habitpilot.db.base import Base
from habitpilot.db import models  # noqa: F401  (imported for side effects)

__all__ = ["Base"]
