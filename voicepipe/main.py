"""FastAPI app — health check + WebSocket voice-session bridge.

Data flow per connection:
  1. Admission: connection rate limit, then the per-client session cap.
  2. Client streams base64 PCM-16 chunks → SessionOrchestrator → Deepgram.
  3. End of utterance (silence / cap / stop) → transcript → Claude.
  4. Claude's structured answer → Cartesia → WAV payload back to the client.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from voicepipe.audio.stt import DeepgramSTT, StreamFactory
from voicepipe.audio.tts import CartesiaTTS
from voicepipe.config import Settings
from voicepipe.constants import POLICY_VIOLATION_CLOSE_CODE
from voicepipe.errors import ErrorCode, ErrorEnvelope, send_error
from voicepipe.llm.responder import ResponseGenerator
from voicepipe.pipeline.events import InvalidMessage
from voicepipe.pipeline.orchestrator import SessionOrchestrator
from voicepipe.pipeline.rate_limit import ConnectionRateLimiter
from voicepipe.pipeline.registry import SessionRegistry
from voicepipe.pipeline.session_context import SessionContext
from voicepipe.telemetry import init_telemetry, shutdown_telemetry
from voicepipe.utils import generate_session_id

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"
TOO_MANY_CONNECTIONS_REASON = "Too many connections"


@dataclass
class Providers:
    """The three provider seams handed to every session."""

    stream_factory: StreamFactory
    generator: Any
    synthesizer: Any


def build_providers(settings: Settings) -> Providers:
    stt = DeepgramSTT(api_key=settings.deepgram_api_key)
    return Providers(
        stream_factory=stt.create_stream,
        generator=ResponseGenerator(api_key=settings.anthropic_api_key, model=settings.anthropic_model),
        synthesizer=CartesiaTTS(api_key=settings.cartesia_api_key, voice_id=settings.tts_voice),
    )


def client_identity(websocket: WebSocket) -> str:
    """First ``X-Forwarded-For`` hop, else the peer host, else ``unknown``."""
    forwarded = websocket.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if websocket.client and websocket.client.host:
        return websocket.client.host
    return "unknown"


def create_app(settings: Settings | None = None, providers: Providers | None = None) -> FastAPI:
    """Build the app; *settings* / *providers* default to the environment and real clients."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Validate configuration (fatal on failure) and build shared state."""
        resolved = settings or Settings.from_env()
        resolved.validate()
        init_telemetry(resolved.otel_exporter, resolved.otel_endpoint)

        app.state.settings = resolved
        app.state.registry = SessionRegistry(max_per_client=resolved.max_connections_per_client)
        app.state.rate_limiter = ConnectionRateLimiter(
            resolved.rate_limit_max_requests, resolved.rate_limit_window_seconds
        )
        app.state.providers = providers or build_providers(resolved)
        logger.info("voicepipe ready — WebSocket at /ws.")

        yield

        active = app.state.registry.active_sessions()
        if active:
            logger.info("Shutting down with %d live session(s).", len(active))
        shutdown_telemetry()

    app = FastAPI(title="voicepipe", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.websocket("/ws")
    async def voice_session(websocket: WebSocket) -> None:
        state = websocket.app.state
        client_id = client_identity(websocket)

        await websocket.accept()

        allowed, retry_after = state.rate_limiter.check(client_id)
        if not allowed:
            logger.warning("[WS] Rate limited %s (retry in %.1fs).", client_id, retry_after)
            await send_error(websocket, ErrorEnvelope(ErrorCode.RATE_LIMIT, RATE_LIMIT_MESSAGE))
            await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason=RATE_LIMIT_MESSAGE)
            return

        admission = state.registry.admit(client_id)
        if admission is None:
            await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason=TOO_MANY_CONNECTIONS_REASON)
            return

        settings_: Settings = state.settings
        providers_: Providers = state.providers
        session = SessionContext(id=generate_session_id(), websocket=websocket, client_id=client_id)
        orchestrator = SessionOrchestrator(
            session,
            stream_factory=providers_.stream_factory,
            generator=providers_.generator,
            synthesizer=providers_.synthesizer,
            silence_ms=settings_.silence_threshold_ms,
            max_recording_seconds=settings_.max_recording_seconds,
            admission=admission,
        )
        state.registry.register(session.id, orchestrator)
        runner = asyncio.create_task(orchestrator.run())

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    orchestrator.handle_frame(message["text"])
                elif message.get("bytes") is not None:
                    orchestrator.submit(InvalidMessage("binary frames are not supported"))
        except WebSocketDisconnect:
            logger.info("[WS] Client disconnected (%s).", session.id)
        except Exception as exc:
            logger.error("[WS] Connection error (%s): %s", session.id, exc, exc_info=True)
        finally:
            orchestrator.close()
            try:
                await asyncio.wait({runner})
                await orchestrator.teardown()
            finally:
                admission.release()
                state.registry.unregister(session.id)

    return app
