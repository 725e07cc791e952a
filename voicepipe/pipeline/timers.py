"""Endpointing timers — silence detection and the hard duration cap.

Both timers are ``loop.call_later`` handles.  A firing timer never touches
session state: it drops its own handle first, then calls ``on_fire``, which
the orchestrator wires to a non-blocking inbox put.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class EndpointTimer:
    """A single cancellable delay with at most one live handle."""

    def __init__(self, name: str, delay: float, on_fire: Callable[[], None]) -> None:
        self.name = name
        self.delay = delay
        self._on_fire = on_fire
        self._handle: asyncio.TimerHandle | None = None
        self.fire_count = 0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Schedule the timer, replacing any live handle."""
        self.clear()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    def clear(self) -> None:
        """Cancel the pending firing. No-op when already fired or cleared."""
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _fire(self) -> None:
        self._handle = None
        self.fire_count += 1
        logger.debug("[Timer] %s elapsed after %.3fs", self.name, self.delay)
        self._on_fire()


class EndpointingTimers:
    """The per-turn timer pair.

    ``silence`` is rearmed on every sign of activity; ``duration`` is armed
    once when listening starts and never rearmed.
    """

    def __init__(
        self,
        *,
        silence_seconds: float,
        max_duration_seconds: float,
        on_silence: Callable[[], None],
        on_duration: Callable[[], None],
    ) -> None:
        self.silence = EndpointTimer("silence", silence_seconds, on_silence)
        self.duration = EndpointTimer("duration", max_duration_seconds, on_duration)
        self.duration_arm_count = 0

    def start(self) -> None:
        """Arm the duration cap (once) and the first silence window."""
        if not self.duration.armed:
            self.duration.arm()
            self.duration_arm_count += 1
        self.silence.arm()

    def touch(self) -> None:
        """Defer end-of-utterance after audio or transcript activity."""
        self.silence.arm()

    def clear(self) -> None:
        self.silence.clear()
        self.duration.clear()

    @property
    def any_armed(self) -> bool:
        return self.silence.armed or self.duration.armed
