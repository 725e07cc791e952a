"""Error taxonomy and the error envelope sent over the WebSocket.

Every error sent to the client follows one JSON shape:

    {"type": "error", "message": "...", "code": "STT_ERROR"}

Error codes
-----------
STT_ERROR         Transcription provider failed (stream open, send or fault).
LLM_ERROR         Response generation failed.
TTS_ERROR         Speech synthesis failed.
RATE_LIMIT        Too many connection attempts from one client identity.
MAX_DURATION      Recording hit the duration cap and was force-finalized.
INVALID_INPUT     Unparseable message, bad audio payload, or empty transcript.
CONNECTION_ERROR  Unclassified failure while handling the session.

Provider failures are classified by the call site that raised them: each
pipeline phase wraps whatever its provider throws in its own
``ProviderError`` subclass, so the code never depends on message text.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    STT_ERROR = "STT_ERROR"
    LLM_ERROR = "LLM_ERROR"
    TTS_ERROR = "TTS_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    MAX_DURATION = "MAX_DURATION"
    INVALID_INPUT = "INVALID_INPUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"


class VoicePipeError(Exception):
    """Base class for every error raised by voicepipe."""

    code: ErrorCode = ErrorCode.CONNECTION_ERROR
    user_message: str = "An error occurred while processing"


class ProviderError(VoicePipeError):
    """A provider call failed; ``stage`` names the pipeline step that made it."""

    stage: str = "provider"

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.user_message)
        self.cause = cause


class TranscriptionError(ProviderError):
    stage = "stt"
    code = ErrorCode.STT_ERROR
    user_message = "Speech recognition failed"


class ResponseGenerationError(ProviderError):
    stage = "llm"
    code = ErrorCode.LLM_ERROR
    user_message = "AI response generation failed"


class SynthesisError(ProviderError):
    stage = "tts"
    code = ErrorCode.TTS_ERROR
    user_message = "Text-to-speech failed"


class InvalidMessageError(VoicePipeError):
    """A client frame could not be parsed into a known message."""

    code = ErrorCode.INVALID_INPUT
    user_message = "Failed to process message"


class ConfigError(VoicePipeError):
    """Startup configuration is unusable; fatal to the process."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = list(problems)
        super().__init__("Configuration errors: " + "; ".join(self.problems))


@dataclass
class ErrorEnvelope:
    code: ErrorCode
    message: str
    session_id: str = ""

    @classmethod
    def from_exception(cls, exc: VoicePipeError, session_id: str = "") -> ErrorEnvelope:
        """Build the client-facing envelope; provider detail stays in the logs."""
        return cls(code=exc.code, message=exc.user_message, session_id=session_id)

    def to_dict(self) -> dict[str, Any]:
        code = self.code.value if isinstance(self.code, ErrorCode) else str(self.code)
        d: dict[str, Any] = {
            "type": "error",
            "message": self.message,
            "code": code,
        }
        if self.session_id:
            d["session_id"] = self.session_id
        return d


async def send_error(websocket: Any, error: ErrorEnvelope) -> None:
    """Serialize *error* and send it as a JSON message on *websocket*.

    Silently catches send failures (the socket may already be closed).
    """
    try:
        await websocket.send_json(error.to_dict())
        logger.warning(
            "[Error] Sent %s to client: %s (session=%s)",
            error.to_dict()["code"],
            error.message,
            error.session_id,
        )
    except Exception as exc:
        logger.debug("[Error] Failed to send error to client: %s", exc)
