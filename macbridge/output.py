"""Output and status sinks.

The bridge reports build output, diagnostics and user-facing status through
an :class:`OutputSink`.  :class:`LoggingOutputSink` routes everything to the
``logging`` tree; :class:`CallbackOutputSink` forwards to host callbacks,
optionally marshalled through a ``dispatch`` callable (e.g. a UI thread's
``after(0, ...)``).
"""

from __future__ import annotations

import logging
import threading
from enum import Enum, auto
from typing import Callable

logger = logging.getLogger(__name__)

Dispatch = Callable[[Callable[[], None]], None]


class OutputChannel(Enum):
    """Destination pane for output lines."""

    BUILD = auto()
    DEBUG = auto()


class StatusLevel(Enum):
    INFORMATION = auto()
    OPERATION = auto()
    WARNING = auto()


class OutputSink:
    """Base sink; every method is a no-op."""

    def write(self, message: str, channel: OutputChannel = OutputChannel.BUILD) -> None:
        """Append *message* to *channel*."""

    def write_status(
        self,
        message: str,
        title: str = "",
        level: StatusLevel = StatusLevel.INFORMATION,
    ) -> None:
        """Show a short user-facing status message."""

    def clear(self, channel: OutputChannel) -> None:
        """Clear *channel*."""


# ---------------------------------------------------------------------------
# Logging sink
# ---------------------------------------------------------------------------

_LEVEL_MAP = {
    StatusLevel.INFORMATION: logging.INFO,
    StatusLevel.OPERATION: logging.INFO,
    StatusLevel.WARNING: logging.WARNING,
}


class LoggingOutputSink(OutputSink):
    """Writes each channel to its own child logger of ``macbridge.output``.

    Channel loggers are created on first use.
    """

    def __init__(self, base_name: str = "macbridge.output") -> None:
        self._base_name = base_name
        self._loggers: dict[OutputChannel, logging.Logger] = {}
        self._lock = threading.Lock()
        self._status_logger = logging.getLogger(f"{base_name}.status")

    def _logger_for(self, channel: OutputChannel) -> logging.Logger:
        channel_logger = self._loggers.get(channel)
        if channel_logger is None:
            with self._lock:
                channel_logger = self._loggers.get(channel)
                if channel_logger is None:
                    channel_logger = logging.getLogger(
                        f"{self._base_name}.{channel.name.lower()}"
                    )
                    self._loggers[channel] = channel_logger
        return channel_logger

    def write(self, message: str, channel: OutputChannel = OutputChannel.BUILD) -> None:
        level = logging.DEBUG if channel is OutputChannel.DEBUG else logging.INFO
        self._logger_for(channel).log(level, "%s", message.rstrip("\r\n"))

    def write_status(
        self,
        message: str,
        title: str = "",
        level: StatusLevel = StatusLevel.INFORMATION,
    ) -> None:
        if title:
            self._status_logger.log(_LEVEL_MAP[level], "[%s] %s", title, message)
        else:
            self._status_logger.log(_LEVEL_MAP[level], "%s", message)

    def clear(self, channel: OutputChannel) -> None:
        # Log streams are append-only.
        self._logger_for(channel).debug("---- %s output cleared ----", channel.name.lower())


# ---------------------------------------------------------------------------
# Callback sink
# ---------------------------------------------------------------------------


class CallbackOutputSink(OutputSink):
    """Forwards output to host-provided callbacks.

    Args:
        on_write: ``(message, channel)`` for output lines.
        on_status: ``(message, title, level)`` for status messages.
        on_clear: ``(channel)`` when a pane should be cleared.
        dispatch: Runs a zero-argument callable on the host's designated
            thread.  Defaults to calling it inline.
    """

    def __init__(
        self,
        on_write: Callable[[str, OutputChannel], None] | None = None,
        on_status: Callable[[str, str, StatusLevel], None] | None = None,
        on_clear: Callable[[OutputChannel], None] | None = None,
        dispatch: Dispatch | None = None,
    ) -> None:
        self.on_write = on_write
        self.on_status = on_status
        self.on_clear = on_clear
        self._dispatch = dispatch or (lambda fn: fn())

    def _emit(self, fn: Callable[[], None]) -> None:
        try:
            self._dispatch(fn)
        except Exception:
            logger.exception("Exception in output callback")

    def write(self, message: str, channel: OutputChannel = OutputChannel.BUILD) -> None:
        if self.on_write:
            callback = self.on_write
            self._emit(lambda: callback(message, channel))

    def write_status(
        self,
        message: str,
        title: str = "",
        level: StatusLevel = StatusLevel.INFORMATION,
    ) -> None:
        if self.on_status:
            callback = self.on_status
            self._emit(lambda: callback(message, title, level))

    def clear(self, channel: OutputChannel) -> None:
        if self.on_clear:
            callback = self.on_clear
            self._emit(lambda: callback(channel))
