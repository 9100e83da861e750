"""Cooperative cancellation shared by one build session."""

from __future__ import annotations

import threading


class CancellationSignal(Exception):
    """Raised at a checkpoint once the session's token has been cancelled.

    Not a failure: orchestration entry points catch it and report the
    operation as not completed.
    """


class CancellationToken:
    """Thread-safe, one-shot cancellation flag.

    Work checks :meth:`raise_if_cancelled` (or :attr:`is_cancelled`) between
    steps; nothing is pre-empted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal("Operation cancelled")
