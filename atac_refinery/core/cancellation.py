"""Cooperative cancellation shared between the session and the engines."""

import threading
from typing import Optional

from .errors import CancelledError


class CancellationToken:
    """Thread-safe flag checked at stage and batch boundaries.

    Example
    -------
    >>> token = CancellationToken()
    >>> token.cancel("user abort")
    >>> token.raise_if_cancelled("differential")
    Traceback (most recent call last):
    ...
    CancelledError: [E007_CANCELLED] Cancelled during differential: user abort
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: str = ""

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: Optional[str] = None) -> None:
        """Raise CancelledError if cancellation was requested."""
        if not self._event.is_set():
            return
        message = f"Cancelled during {where}" if where else "Cancelled"
        if self.reason:
            message = f"{message}: {self.reason}"
        raise CancelledError(message, {"stage": where, "reason": self.reason})
