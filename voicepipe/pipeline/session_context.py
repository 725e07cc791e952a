"""SessionContext — per-connection state, and Turn — per-utterance state.

A session hosts many turns.  Everything that must die with an utterance
(the transcription stream, the timer pair, the cancel flag) hangs off the
``Turn`` so a cancelled turn can never leak into the next one.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

from voicepipe.audio.stt import TranscriptionStream
from voicepipe.pipeline.timers import EndpointingTimers
from voicepipe.protocol import AppStatus


class SessionState(str, enum.Enum):
    IDLE = "Idle"
    LISTENING = "Listening"
    TRANSCRIBING_FINAL = "TranscribingFinal"
    GENERATING_RESPONSE = "GeneratingResponse"
    SYNTHESIZING = "Synthesizing"
    READY_TO_PLAY = "ReadyToPlay"

    @property
    def status(self) -> AppStatus:
        return _STATUS_BY_STATE[self]


_STATUS_BY_STATE = {
    SessionState.IDLE: AppStatus.IDLE,
    SessionState.LISTENING: AppStatus.LISTENING,
    SessionState.TRANSCRIBING_FINAL: AppStatus.PROCESSING_STT,
    SessionState.GENERATING_RESPONSE: AppStatus.PROCESSING_LLM,
    SessionState.SYNTHESIZING: AppStatus.PROCESSING_TTS,
    SessionState.READY_TO_PLAY: AppStatus.READY_TO_PLAY,
}

# States in which the turn's pipeline task owns progress.
PROCESSING_STATES = frozenset({
    SessionState.TRANSCRIBING_FINAL,
    SessionState.GENERATING_RESPONSE,
    SessionState.SYNTHESIZING,
})


@dataclass
class Turn:
    """One utterance, from first audio chunk to playable response."""

    id: str
    timers: EndpointingTimers
    stream: TranscriptionStream | None = None
    started_at: float = field(default_factory=time.monotonic)
    cancelled: bool = False
    # Set once STT_ERROR has been reported for this turn.
    faulted: bool = False

    def cancel(self) -> bool:
        """Set the cancel flag. Returns True only on the first call."""
        if self.cancelled:
            return False
        self.cancelled = True
        return True

    def take_stream(self) -> TranscriptionStream | None:
        """Detach and return the stream so exactly one owner closes it."""
        stream, self.stream = self.stream, None
        return stream


@dataclass
class SessionContext:
    """All per-session mutable state for a single WebSocket connection."""

    id: str
    websocket: Any
    client_id: str = "unknown"
    state: SessionState = SessionState.IDLE
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    closed: bool = False
    turn: Turn | None = None
    metrics: dict[str, int] = field(default_factory=lambda: {
        "turn_count": 0,
        "cancel_count": 0,
        "error_count": 0,
    })

    def touch(self) -> None:
        self.last_activity_at = time.time()

    def is_live(self, turn: Turn | None) -> bool:
        """True when *turn* is the current, uncancelled turn of an open session."""
        return not self.closed and turn is not None and turn is self.turn and not turn.cancelled
