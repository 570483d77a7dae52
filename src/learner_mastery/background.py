"""Fire-and-forget work: bootstrap writes and override recording."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from loguru import logger

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="learner-mastery")


def spawn(fn: Callable[..., Any], *args: Any, description: str = "", **kwargs: Any) -> Future:
    """Run ``fn`` off the caller's path. Failures are logged and dropped.

    The returned future never raises from ``result()``; it resolves to None
    when the task failed.
    """
    label = description or getattr(fn, "__name__", "task")

    def _run() -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.warning(f"background: {label} failed (non-blocking): {exc!r}")
            return None

    return _executor.submit(_run)


__all__ = ["spawn"]
