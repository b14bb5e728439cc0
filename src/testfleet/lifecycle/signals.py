"""Synchronous termination-signal hook."""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

_Handler = Callable[[int, FrameType | None], Any] | int | None


class SignalExitHook:
    """Runs a synchronous callback when the process receives a termination signal.

    After the callback, the previously installed disposition is restored and
    the signal is re-delivered, so the process still terminates the way it
    would have without the hook.
    """

    def __init__(
        self,
        signals: tuple[signal.Signals, ...] = DEFAULT_SIGNALS,
        *,
        redeliver: bool = True,
    ) -> None:
        self._signals = signals
        self._redeliver = redeliver
        self._previous: dict[signal.Signals, _Handler] = {}
        self._callback: Callable[[int], None] | None = None

    @property
    def installed(self) -> bool:
        return bool(self._previous)

    def install(self, callback: Callable[[int], None]) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Signal hook not installed: not running in the main thread")
            return
        self._callback = callback
        for sig in self._signals:
            self._previous[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle)

    def uninstall(self) -> None:
        for sig, previous in self._previous.items():
            try:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
            except (ValueError, OSError) as exc:
                logger.debug("Could not restore handler for %s: %s", sig.name, exc)
        self._previous.clear()
        self._callback = None

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        callback = self._callback
        previous = self._previous.get(signal.Signals(signum))
        self.uninstall()
        if callback is not None:
            try:
                callback(signum)
            except Exception as exc:
                logger.error("Emergency teardown hook failed: %s", exc, exc_info=exc)

        if not self._redeliver:
            return
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        os.kill(os.getpid(), signum)
