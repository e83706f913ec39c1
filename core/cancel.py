"""
Cooperative cancellation for the matcher and dispatcher loops.
"""
from __future__ import annotations

import threading
from typing import Optional


class CancellationToken:
    """
    Set once, checked between items. A send that already started is always
    recorded before the loop notices the token.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True early if cancelled."""
        return self._event.wait(timeout)


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


__all__ = ["CancellationToken", "is_cancelled"]
