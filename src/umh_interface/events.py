"""
Event hooks used to publish decoded messages to independent listeners.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, List

from loguru import logger


class EventHook:
    """
    Named observer registry.

    Listeners are called synchronously on the emitting thread, in
    subscription order. A listener that raises is logged and skipped.
    """

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            self._callbacks.append(callback)
        logger.debug(f"Registered callback for {self.name}")

    def unsubscribe(self, callback: Callable[..., Any]) -> None:
        """Remove a registered callback."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def clear(self) -> None:
        with self._lock:
            self._callbacks.clear()

    def emit(self, *args: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{self.name} callback error: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)
