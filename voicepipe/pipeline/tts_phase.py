"""TTS phase — synthesize the response summary into a playable payload."""

from __future__ import annotations

import logging
from typing import Any

from voicepipe.audio.tts import SynthesizedAudio
from voicepipe.errors import SynthesisError
from voicepipe.telemetry import stage_span

logger = logging.getLogger(__name__)


async def run_tts(text: str, synthesizer: Any) -> SynthesizedAudio:
    """Call ``synthesizer.synthesize(text)``; any failure becomes ``SynthesisError``."""
    with stage_span("tts", {"text.len": len(text)}) as span:
        try:
            result = await synthesizer.synthesize(text)
        except SynthesisError:
            raise
        except Exception as exc:
            raise SynthesisError(f"Synthesis failed: {exc}", cause=exc) from exc
        span.set_attribute("audio.bytes", len(result.audio))
        logger.info("[TTS] %d bytes of %s ready.", len(result.audio), result.mime_type)
        return result
