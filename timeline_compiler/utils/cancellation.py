from __future__ import annotations

import logging
import threading
from typing import Callable

from timeline_compiler.errors import CancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by every step of one compile."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback on cancel (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove

        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, timeout))
