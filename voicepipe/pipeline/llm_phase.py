"""LLM phase — turn the finalized transcript into a structured response."""

from __future__ import annotations

import logging
from typing import Any

from voicepipe.errors import ResponseGenerationError
from voicepipe.llm.responder import StructuredResponse
from voicepipe.telemetry import stage_span

logger = logging.getLogger(__name__)


async def run_llm(transcript: str, generator: Any) -> StructuredResponse:
    """Call ``generator.generate(transcript)``; any failure becomes ``ResponseGenerationError``."""
    with stage_span("llm", {"transcript.len": len(transcript)}):
        try:
            response = await generator.generate(transcript)
        except ResponseGenerationError:
            raise
        except Exception as exc:
            raise ResponseGenerationError(f"Response generation failed: {exc}", cause=exc) from exc
        logger.info("[LLM] Complete. Bullets: %d", len(response.bullets))
        return response
