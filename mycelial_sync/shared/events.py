"""
MODULE OVERVIEW:
The change-notification primitive behind every store and the controller.

WHAT IS HAPPENING HERE:
A minimal synchronous pub/sub signal. Stores emit on every mutation so
dependent views (the Rich dashboard, tests, any renderer) can recompute.
A failing subscriber is logged and skipped so one broken view never stops
a store mutation or the other subscribers.
"""

from typing import Any, Callable, List

from loguru import logger


class Signal:
    def __init__(self, name: str = "signal"):
        self.name = name
        self._subscribers: List[Callable[[Any], None]] = []

    def subscribe(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register a callback and return a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, payload: Any = None) -> None:
        for sub in list(self._subscribers):
            try:
                sub(payload)
            except Exception as e:
                logger.error(f"signal={self.name} event=subscriber_error reason='{e}'")

    def __len__(self) -> int:
        return len(self._subscribers)
