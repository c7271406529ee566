"""
Cancellation tokens.

Every store operation accepts an optional ``CancelToken``. A token fires when
``cancel()`` is called or when its deadline passes; the operation then raises
``OperationCancelled`` instead of returning a partial result.
"""
from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import OperationCancelled


class CancelToken:
    """Thread-safe cancellation flag with an optional deadline."""

    def __init__(self, deadline: Optional[float] = None):
        """
        Args:
            deadline: Absolute ``time.monotonic()`` value after which the
                      token counts as cancelled (None = no deadline)
        """
        self._event = threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        """Create a token that cancels itself ``seconds`` from now."""
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise OperationCancelled("deadline exceeded")


def check(token: Optional[CancelToken]) -> None:
    """Raise ``OperationCancelled`` if ``token`` has fired. None never fires."""
    if token is not None:
        token.raise_if_cancelled()
