"""Detached background work and collaborator timeouts."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextvars import copy_context
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Optional, TypeVar

from habitpilot.core.config import settings
from habitpilot.core.errors import CollaboratorTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundRunner:
    """Fire-and-forget task submission; failures are logged, never returned."""

    def __init__(self, max_workers: int = 4, *, name: str = "habitpilot-bg") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ctx = copy_context()
        self._executor.submit(ctx.run, _guarded, label, fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineBackgroundRunner(BackgroundRunner):
    """Runs submitted work synchronously; used by tests and one-shot scripts."""

    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.submitted.append(label)
        _guarded(label, fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        return None


def _guarded(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.exception("Background task %s failed", label)


@lru_cache
def get_background_runner() -> BackgroundRunner:
    return BackgroundRunner(max_workers=settings.background_workers)


_timeout_pool: Optional[ThreadPoolExecutor] = None
_timeout_pool_lock = Lock()


def _get_timeout_pool() -> ThreadPoolExecutor:
    global _timeout_pool
    with _timeout_pool_lock:
        if _timeout_pool is None:
            _timeout_pool = ThreadPoolExecutor(max_workers=16, thread_name_prefix="habitpilot-call")
        return _timeout_pool


def run_with_timeout(operation: str, timeout_seconds: float, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn`` and raise CollaboratorTimeout if it does not finish in time.

    The worker thread is abandoned on timeout; its result is discarded.
    """
    ctx = copy_context()
    future: Future = _get_timeout_pool().submit(ctx.run, fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout as exc:
        future.cancel()
        raise CollaboratorTimeout(operation, timeout_seconds) from exc
