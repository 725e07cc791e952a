"""WebSocket wire protocol.

Client → server frames are JSON objects tagged by ``type`` and validated
with a pydantic discriminated union.  Server → client frames are plain
dicts built by the helpers below so every emitter produces the same shape.
"""

from __future__ import annotations

import base64
import binascii
import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from voicepipe.errors import InvalidMessageError


class AppStatus(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING_STT = "processing_stt"
    PROCESSING_LLM = "processing_llm"
    PROCESSING_TTS = "processing_tts"
    READY_TO_PLAY = "ready_to_play"


# ---------------------------------------------------------------------------
# Client → server
# ---------------------------------------------------------------------------


class AudioChunkMessage(BaseModel):
    type: Literal["audio_chunk"]
    data: str = Field(min_length=1, description="base64 PCM16LE mono 16 kHz")

    def decode_audio(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidMessageError("audio_chunk.data is not valid base64") from exc


class StopRecordingMessage(BaseModel):
    type: Literal["stop_recording"]


class CancelMessage(BaseModel):
    type: Literal["cancel"]


ClientMessage = Annotated[
    Union[AudioChunkMessage, StopRecordingMessage, CancelMessage],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> AudioChunkMessage | StopRecordingMessage | CancelMessage:
    """Parse one text frame; raise ``InvalidMessageError`` on anything unusable."""
    try:
        return _client_message_adapter.validate_json(raw)
    except ValidationError as exc:
        raise InvalidMessageError(f"Invalid client message: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Server → client
# ---------------------------------------------------------------------------


def status_message(status: AppStatus) -> dict[str, Any]:
    return {"type": "status", "status": status.value}


def partial_transcript_message(text: str, is_final: bool) -> dict[str, Any]:
    return {"type": "partial_transcript", "text": text, "isFinal": is_final}


def final_transcript_message(text: str) -> dict[str, Any]:
    return {"type": "final_transcript", "text": text}


def llm_response_message(summary: str, bullets: list[str], next_action: str) -> dict[str, Any]:
    return {
        "type": "llm_response",
        "summary": summary,
        "bullets": list(bullets),
        "next_action": next_action,
    }


def tts_audio_message(audio: bytes, mime_type: str) -> dict[str, Any]:
    return {
        "type": "tts_audio",
        "audioBase64": base64.b64encode(audio).decode("ascii"),
        "mimeType": mime_type,
    }
