"""Cartesia Sonic TTS client — text in, one playable audio payload out."""

from __future__ import annotations

import base64
import io
import json
import logging
import uuid
import wave
from dataclasses import dataclass
from typing import AsyncGenerator

import websockets

from voicepipe.constants import (
    DEFAULT_TTS_VOICE,
    MAX_TTS_INPUT_CHARS,
    TTS_MIME_TYPE,
    TTS_SAMPLE_RATE,
)
from voicepipe.errors import SynthesisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SynthesizedAudio:
    audio: bytes
    mime_type: str


def pcm_to_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw PCM-16 LE samples in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buf.getvalue()


class CartesiaTTS:
    """Streams text to Cartesia Sonic and returns the full utterance as WAV.

    Parameters
    ----------
    api_key : str
        Cartesia API key (from CARTESIA_API_KEY env var).
    voice_id : str
        Cartesia voice ID to use for synthesis.
    sample_rate : int
        Output PCM sample rate.
    """

    WS_URL = "wss://api.cartesia.ai/tts/websocket"
    API_VERSION = "2025-04-16"
    MODEL_ID = "sonic-3"

    def __init__(
        self,
        api_key: str,
        *,
        voice_id: str = DEFAULT_TTS_VOICE,
        sample_rate: int = TTS_SAMPLE_RATE,
        max_chars: int = MAX_TTS_INPUT_CHARS,
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id
        self._sample_rate = sample_rate
        self._max_chars = max_chars

    async def synthesize(self, text: str) -> SynthesizedAudio:
        """Synthesize *text* (truncated to the input bound) into one WAV payload."""
        if not text.strip():
            raise SynthesisError("Empty text provided for TTS")

        chunks: list[bytes] = []
        async for chunk in self.synthesize_stream(text[: self._max_chars]):
            chunks.append(chunk)

        pcm = b"".join(chunks)
        if not pcm:
            raise SynthesisError("Cartesia returned no audio")
        logger.info("[TTS] Synthesized %d PCM bytes (%d chunks).", len(pcm), len(chunks))
        return SynthesizedAudio(pcm_to_wav(pcm, self._sample_rate), TTS_MIME_TYPE)

    async def synthesize_stream(self, text: str) -> AsyncGenerator[bytes, None]:
        """Synthesize *text* and yield PCM-16 audio chunks as they arrive.

        Raises ``SynthesisError`` on a rejected connection or an error frame.
        """
        if not self._api_key:
            raise SynthesisError("CARTESIA_API_KEY is empty")

        ws_url = (
            f"{self.WS_URL}"
            f"?api_key={self._api_key}"
            f"&cartesia_version={self.API_VERSION}"
        )

        request_id = str(uuid.uuid4())
        payload = json.dumps({
            "model_id": self.MODEL_ID,
            "transcript": text,
            "voice": {
                "mode": "id",
                "id": self._voice_id,
            },
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self._sample_rate,
            },
            "context_id": request_id,
            "continue": False,
        })

        try:
            async with websockets.connect(ws_url) as ws:
                await ws.send(payload)
                logger.info("[TTS] Synthesizing: %.80s...", text)

                async for raw in ws:
                    # Binary frame = raw PCM audio
                    if isinstance(raw, bytes):
                        yield raw
                        continue

                    try:
                        msg = json.loads(raw)
                    except json.JSONDecodeError:
                        continue

                    msg_type = msg.get("type", "")
                    if msg_type == "done":
                        logger.debug("[TTS] Stream complete for request %s", request_id)
                        break
                    elif msg_type == "error":
                        raise SynthesisError(f"Cartesia error: {msg.get('error', msg)}")
                    elif "data" in msg:
                        yield base64.b64decode(msg["data"])
        except SynthesisError:
            raise
        except websockets.exceptions.InvalidStatus as exc:
            raise SynthesisError(
                f"Cartesia rejected connection (status {exc.response.status_code})", cause=exc
            ) from exc
        except Exception as exc:
            raise SynthesisError(f"Cartesia WebSocket error: {exc}", cause=exc) from exc
