"""Items placed on a session's inbox queue.

Client messages, endpointing timers and the transcription stream all feed
the same queue, so the orchestrator applies transitions from exactly one
consumer in arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AudioReceived:
    audio: bytes


@dataclass(frozen=True)
class StopRequested:
    pass


@dataclass(frozen=True)
class CancelRequested:
    pass


@dataclass(frozen=True)
class InvalidMessage:
    reason: str


@dataclass(frozen=True)
class SilenceElapsed:
    turn_id: str


@dataclass(frozen=True)
class DurationElapsed:
    turn_id: str


@dataclass(frozen=True)
class TranscriptUpdate:
    """Incremental transcription result.

    ``text`` is what a client should render: the accumulated final text,
    plus the in-flight partial segment when ``is_final`` is false.
    """

    turn_id: str
    text: str
    is_final: bool


@dataclass(frozen=True)
class TranscriptionFault:
    turn_id: str
    message: str


@dataclass(frozen=True)
class ConnectionClosed:
    pass


SessionEvent = (
    AudioReceived
    | StopRequested
    | CancelRequested
    | InvalidMessage
    | SilenceElapsed
    | DurationElapsed
    | TranscriptUpdate
    | TranscriptionFault
    | ConnectionClosed
)
