"""Cancellable delayed callbacks."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

__all__ = ["TimeOutService", "timed_callback"]


def timed_callback(
    cancel: threading.Event, delay: float, callback: Callable[[], Any]
) -> None:
    """Block for ``delay`` seconds, then call ``callback`` unless ``cancel`` was set."""
    if not cancel.wait(delay):
        callback()


class TimeOutService:
    """Schedules callbacks built by a factory from per-timeout arguments."""

    def __init__(self, callback_factory: Callable[..., Callable[[], Any]]) -> None:
        self.callback_factory = callback_factory

    def add_new_timeout(
        self, cancel: threading.Event, delay: float, *args: Any
    ) -> threading.Thread:
        """Start a background timer; return its thread."""
        thread = threading.Thread(
            target=timed_callback,
            args=(cancel, delay, self.callback_factory(*args)),
            daemon=True,
        )
        thread.start()
        return thread