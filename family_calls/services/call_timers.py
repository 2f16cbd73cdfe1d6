"""
Per-call timers: ring timeout, connect timeout and disconnect grace.

Timers do not act on the session directly. They report (kind, token) to a
callback, and the session checks the token against its current call before
doing anything.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, Optional

from family_calls.config import Settings

logger = logging.getLogger(__name__)


class TimerKind(str, Enum):
    RING = "ring"
    CONNECT = "connect"
    DISCONNECT_GRACE = "disconnect_grace"


class CallTimers:
    """Named one-shot timers on the running event loop."""

    def __init__(self, on_fire: Callable[[TimerKind, int], None], settings: Settings):
        self._on_fire = on_fire
        self.settings = settings
        self._handles: Dict[TimerKind, asyncio.TimerHandle] = {}

    def default_delay(self, kind: TimerKind) -> float:
        if kind == TimerKind.RING:
            return self.settings.ring_timeout_seconds
        if kind == TimerKind.CONNECT:
            return self.settings.connect_timeout_seconds
        return self.settings.disconnect_grace_seconds

    def start(self, kind: TimerKind, token: int, delay: Optional[float] = None) -> None:
        """(Re)start a timer; a running timer of the same kind is replaced."""
        self.cancel(kind)
        delay = self.default_delay(kind) if delay is None else delay
        loop = asyncio.get_running_loop()
        self._handles[kind] = loop.call_later(delay, self._fire, kind, token)
        logger.debug(f"{kind.value} timer started ({delay}s)")

    def _fire(self, kind: TimerKind, token: int) -> None:
        self._handles.pop(kind, None)
        logger.debug(f"{kind.value} timer fired")
        self._on_fire(kind, token)

    def cancel(self, kind: TimerKind) -> None:
        handle = self._handles.pop(kind, None)
        if handle:
            handle.cancel()

    def cancel_all(self) -> None:
        for kind in list(self._handles):
            self.cancel(kind)

    def is_running(self, kind: TimerKind) -> bool:
        return kind in self._handles
