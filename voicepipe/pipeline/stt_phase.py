"""STT phase — finalize the turn's transcription stream."""

from __future__ import annotations

import logging

from voicepipe.audio.stt import TranscriptionStream
from voicepipe.errors import TranscriptionError
from voicepipe.telemetry import stage_span

logger = logging.getLogger(__name__)


async def run_stt(stream: TranscriptionStream) -> str:
    """Request the final transcript from *stream*, then close it.

    The stream is closed on every path.  Returns the stripped transcript,
    which may be empty.
    """
    with stage_span("stt") as span:
        try:
            transcript = await stream.finish()
        except Exception as exc:
            raise TranscriptionError(f"finish() failed: {exc}", cause=exc) from exc
        finally:
            await stream.close()

        transcript = transcript.strip()
        span.set_attribute("transcript.len", len(transcript))
        if transcript:
            logger.info("[STT] Transcript: %s", transcript)
        else:
            logger.info("[STT] Empty transcript — user may have been silent.")
        return transcript
