from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort the current plan."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def request_cancel(self, reason: str = "cancel_requested") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason or "Cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`, returning early (with CancelledError) on cancel."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(timeout=seconds):
            raise CancelledError(self._reason or "Cancelled")
