from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe cancellation flag shared between a signal handler and the worker loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self) -> None:
        self._event.set()

    def wait(self, timeout_s: float | None = None) -> bool:
        """Block up to `timeout_s`; returns True if cancellation was requested."""
        return self._event.wait(timeout=timeout_s)
