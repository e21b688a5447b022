"""Cancellation token shared by the transport, the pipes and the session."""

import threading
from typing import Callable, List, Optional

from replcast.core.errors import Cancelled


class CancelToken:
    """
    Explicit cancellation flag.

    The CLI trips the token from its SIGINT handler. Blocking code checks it
    at its suspension points instead of relying on signal delivery.
    Callbacks registered with ``on_cancel`` run once, in the thread that
    calls ``cancel``.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self.signals = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Trip the token. Repeated calls only count the signal."""
        with self._lock:
            self.signals += 1
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Interrupted")
