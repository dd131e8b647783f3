from __future__ import annotations

import threading
from typing import Callable, List, Optional

from .errors import CancellationError


class CancelToken:
    """
    One-shot cancellation flag shared between a run, its jobs and the
    process running the current step.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CancellationError] = None
        self._callbacks: List[Callable[[CancellationError], None]] = []

    def cancel(self, reason: CancellationError | str | None = None) -> bool:
        """Fire the token. Returns False if it was already cancelled."""
        if reason is None:
            reason = CancellationError()
        elif isinstance(reason, str):
            reason = CancellationError(reason)

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for cb in callbacks:
            cb(reason)
        return True

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def on_cancel(self, cb: Callable[[CancellationError], None]) -> None:
        """Run `cb` once when the token fires (immediately if it already has)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
            reason = self._reason
        cb(reason)

    @property
    def reason(self) -> Optional[CancellationError]:
        return self._reason
