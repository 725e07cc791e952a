"""Tests for the error envelope and send_error utility.

Run:
    uv run pytest tests/test_error_envelope.py -v
"""

from unittest.mock import AsyncMock

import pytest

from voicepipe.errors import (
    ConfigError,
    ErrorCode,
    ErrorEnvelope,
    InvalidMessageError,
    ProviderError,
    ResponseGenerationError,
    SynthesisError,
    TranscriptionError,
    send_error,
)


class TestErrorEnvelopeSerialization:
    """ErrorEnvelope.to_dict() produces the expected JSON shape."""

    def test_basic_serialization(self):
        err = ErrorEnvelope(ErrorCode.STT_ERROR, "Speech recognition failed", "session-abc123")
        d = err.to_dict()
        assert d == {
            "type": "error",
            "message": "Speech recognition failed",
            "code": "STT_ERROR",
            "session_id": "session-abc123",
        }

    def test_session_id_omitted_when_empty(self):
        d = ErrorEnvelope(ErrorCode.RATE_LIMIT, "Too many requests, please try again later").to_dict()
        assert "session_id" not in d
        assert d["code"] == "RATE_LIMIT"

    def test_all_error_codes(self):
        assert {code.value for code in ErrorCode} == {
            "STT_ERROR",
            "LLM_ERROR",
            "TTS_ERROR",
            "RATE_LIMIT",
            "MAX_DURATION",
            "INVALID_INPUT",
            "CONNECTION_ERROR",
        }


class TestProviderErrors:
    """Each stage's error carries its own code and a fixed user message."""

    @pytest.mark.parametrize(
        "error_cls, code, message, stage",
        [
            (TranscriptionError, ErrorCode.STT_ERROR, "Speech recognition failed", "stt"),
            (ResponseGenerationError, ErrorCode.LLM_ERROR, "AI response generation failed", "llm"),
            (SynthesisError, ErrorCode.TTS_ERROR, "Text-to-speech failed", "tts"),
        ],
    )
    def test_stage_mapping(self, error_cls, code, message, stage):
        exc = error_cls("provider said: Deepgram timeout at TTS layer")
        assert isinstance(exc, ProviderError)
        assert exc.stage == stage
        envelope = ErrorEnvelope.from_exception(exc, "session-1")
        assert envelope.code == code
        assert envelope.message == message

    def test_provider_detail_stays_out_of_envelope(self):
        exc = ResponseGenerationError("anthropic 529 overloaded", cause=RuntimeError("529"))
        d = ErrorEnvelope.from_exception(exc).to_dict()
        assert "529" not in d["message"]
        assert isinstance(exc.cause, RuntimeError)

    def test_invalid_message_maps_to_invalid_input(self):
        envelope = ErrorEnvelope.from_exception(InvalidMessageError("bad json"))
        assert envelope.code == ErrorCode.INVALID_INPUT
        assert envelope.message == "Failed to process message"

    def test_config_error_lists_problems(self):
        exc = ConfigError(["DEEPGRAM_API_KEY is required", "PORT must be positive (got 0)"])
        assert exc.problems == ["DEEPGRAM_API_KEY is required", "PORT must be positive (got 0)"]
        assert "DEEPGRAM_API_KEY" in str(exc)


class TestSendError:
    """send_error() calls websocket.send_json() with the correct payload."""

    @pytest.mark.asyncio
    async def test_send_error_calls_send_json(self):
        ws = AsyncMock()
        await send_error(ws, ErrorEnvelope(ErrorCode.LLM_ERROR, "AI response generation failed", "session-test"))
        ws.send_json.assert_called_once()
        payload = ws.send_json.call_args[0][0]
        assert payload["type"] == "error"
        assert payload["code"] == "LLM_ERROR"
        assert payload["message"] == "AI response generation failed"

    @pytest.mark.asyncio
    async def test_send_error_swallows_send_failure(self):
        ws = AsyncMock()
        ws.send_json.side_effect = RuntimeError("socket closed")
        await send_error(ws, ErrorEnvelope(ErrorCode.CONNECTION_ERROR, "An error occurred while processing"))
        ws.send_json.assert_called_once()
