# file: core/cancel.py
"""
Cooperative cancellation for blocking init/reset waits.

Waits in the launcher poll the token in short slices, so a cancel from another
thread is observed within one slice.
"""
from __future__ import annotations

import threading
from typing import Optional

from core.errors import Cancelled


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise Cancelled(f"{what} cancelled")


def check(token: Optional[CancelToken], what: str = "operation") -> None:
    """Tolerates None so callers can pass an optional token straight through."""
    if token is not None:
        token.raise_if_cancelled(what)
