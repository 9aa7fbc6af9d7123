"""
Run-scoped cancellation.

Checked by the engine between resources, never mid-apply: an apply in
flight always finishes so external state is not left half-changed.
"""

from __future__ import annotations

import threading


class CancelToken:
    """Thread-safe cancellation flag for one run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
