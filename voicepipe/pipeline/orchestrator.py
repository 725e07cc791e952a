"""Session orchestrator — the per-connection turn state machine.

Data flow for one turn:
  1. First ``audio_chunk`` after idle → open a transcription stream, arm the
     duration cap, status ``listening``.
  2. Every chunk is forwarded and rearms the silence timer; transcript
     updates are echoed as ``partial_transcript`` and also rearm it.
  3. Silence, the duration cap, or ``stop_recording`` → ``processing_stt``:
     the stream is finished (bounded wait) and closed.
  4. Transcript → response generator → ``llm_response``.
  5. Summary → synthesizer → ``tts_audio`` → ``ready_to_play``.

Every producer (the WebSocket reader, both timers, the transcription stream)
only puts events on ``inbox``; ``run()`` is the single consumer that applies
transitions.  Steps 3–5 run in one pipeline task per turn so a ``cancel``
is still consumed while a provider call is in flight; the task checks
``SessionContext.is_live(turn)`` after every await and drops its output once
the turn is cancelled or the connection is gone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from voicepipe.audio.stt import StreamFactory, TranscriptionStream
from voicepipe.constants import DEFAULT_MAX_RECORDING_SECONDS, DEFAULT_SILENCE_THRESHOLD_MS
from voicepipe.errors import (
    ErrorCode,
    ErrorEnvelope,
    InvalidMessageError,
    ProviderError,
    TranscriptionError,
    send_error,
)
from voicepipe.pipeline.events import (
    AudioReceived,
    CancelRequested,
    ConnectionClosed,
    DurationElapsed,
    InvalidMessage,
    SessionEvent,
    SilenceElapsed,
    StopRequested,
    TranscriptionFault,
    TranscriptUpdate,
)
from voicepipe.pipeline.llm_phase import run_llm
from voicepipe.pipeline.registry import Admission
from voicepipe.pipeline.session_context import PROCESSING_STATES, SessionContext, SessionState, Turn
from voicepipe.pipeline.stt_phase import run_stt
from voicepipe.pipeline.timers import EndpointingTimers
from voicepipe.pipeline.tts_phase import run_tts
from voicepipe.protocol import (
    AudioChunkMessage,
    CancelMessage,
    final_transcript_message,
    llm_response_message,
    parse_client_message,
    partial_transcript_message,
    status_message,
    tts_audio_message,
)
from voicepipe.telemetry import current_trace_id
from voicepipe.utils import generate_turn_id

logger = logging.getLogger(__name__)

NO_SPEECH_MESSAGE = "No speech detected"
MAX_DURATION_MESSAGE = "Maximum recording duration reached"
UNEXPECTED_MESSAGE = "An error occurred while processing"


class SessionOrchestrator:
    """Drives one session's turns.

    Parameters
    ----------
    session : SessionContext
        The connection's state; ``session.websocket`` needs ``send_json``.
    stream_factory : StreamFactory
        ``(on_update, on_fault) -> TranscriptionStream`` for each new turn.
    generator :
        Object with ``async generate(text) -> StructuredResponse``.
    synthesizer :
        Object with ``async synthesize(text) -> SynthesizedAudio``.
    silence_ms, max_recording_seconds :
        Endpointing thresholds.
    admission : Admission, optional
        Registry ticket released during teardown.
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        stream_factory: StreamFactory,
        generator: Any,
        synthesizer: Any,
        silence_ms: float = DEFAULT_SILENCE_THRESHOLD_MS,
        max_recording_seconds: float = DEFAULT_MAX_RECORDING_SECONDS,
        admission: Admission | None = None,
    ) -> None:
        self.session = session
        self._stream_factory = stream_factory
        self._generator = generator
        self._synthesizer = synthesizer
        self._silence_seconds = silence_ms / 1000.0
        self._max_recording_seconds = float(max_recording_seconds)
        self._admission = admission

        self.inbox: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._pipeline_task: asyncio.Task | None = None
        self._torn_down = False

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def submit(self, event: SessionEvent) -> None:
        """Queue *event* for the consumer. Dropped once the connection is closed."""
        if self.session.closed and not isinstance(event, ConnectionClosed):
            return
        self.inbox.put_nowait(event)

    def handle_frame(self, raw: str | bytes) -> None:
        """Parse one client text frame and queue the matching event."""
        try:
            message = parse_client_message(raw)
            if isinstance(message, AudioChunkMessage):
                self.submit(AudioReceived(message.decode_audio()))
            elif isinstance(message, CancelMessage):
                self.request_cancel()
            else:
                self.submit(StopRequested())
        except InvalidMessageError as exc:
            logger.warning("[Session %s] %s", self.session.id, exc)
            self.submit(InvalidMessage(str(exc)))

    def request_cancel(self) -> None:
        """Flag the current turn now, then queue the cancel transition.

        The flag is what an in-flight stage checks; the queued event performs
        the teardown in arrival order.
        """
        if self.session.turn is not None:
            self.session.turn.cancel()
        self.submit(CancelRequested())

    def close(self) -> None:
        """Mark the connection gone and queue teardown."""
        if self.session.closed:
            return
        self.session.closed = True
        if self.session.turn is not None:
            self.session.turn.cancel()
        self.submit(ConnectionClosed())

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume the inbox until ``ConnectionClosed``."""
        logger.info("[Session %s] Started for %s.", self.session.id, self.session.client_id)
        await self._send(status_message(self.session.state.status))
        while True:
            event = await self.inbox.get()
            try:
                if isinstance(event, ConnectionClosed):
                    await self.teardown()
                    return
                await self._dispatch(event)
            except Exception as exc:
                logger.error(
                    "[Session %s] Handling %s failed: %s (trace=%s)",
                    self.session.id, type(event).__name__, exc, current_trace_id(),
                    exc_info=True,
                )
                await self._fail_turn(self.session.turn, ErrorEnvelope(ErrorCode.CONNECTION_ERROR, UNEXPECTED_MESSAGE))
            finally:
                self.inbox.task_done()

    async def settle(self) -> None:
        """Wait until queued events and the current pipeline run are processed."""
        while True:
            await self.inbox.join()
            task = self._pipeline_task
            if task is not None and not task.done():
                await asyncio.wait({task})
                continue
            if self.inbox.empty():
                return

    async def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, AudioReceived):
            await self._on_audio(event.audio)
        elif isinstance(event, StopRequested):
            await self._on_stop()
        elif isinstance(event, CancelRequested):
            await self._on_cancel()
        elif isinstance(event, InvalidMessage):
            await self._send_error(ErrorEnvelope(ErrorCode.INVALID_INPUT, InvalidMessageError.user_message))
        elif isinstance(event, SilenceElapsed):
            await self._on_silence(event)
        elif isinstance(event, DurationElapsed):
            await self._on_duration(event)
        elif isinstance(event, TranscriptUpdate):
            await self._on_transcript(event)
        elif isinstance(event, TranscriptionFault):
            await self._on_fault(event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_audio(self, audio: bytes) -> None:
        state = self.session.state
        if state in PROCESSING_STATES:
            logger.debug("[Session %s] Audio during %s dropped.", self.session.id, state.value)
            return
        if state is not SessionState.LISTENING:
            if not await self._start_turn():
                return

        turn = self.session.turn
        if not self.session.is_live(turn) or turn.stream is None:
            return
        self.session.touch()
        turn.stream.send(audio)
        turn.timers.touch()

    async def _start_turn(self) -> bool:
        turn_id = generate_turn_id()
        timers = EndpointingTimers(
            silence_seconds=self._silence_seconds,
            max_duration_seconds=self._max_recording_seconds,
            on_silence=lambda: self.submit(SilenceElapsed(turn_id)),
            on_duration=lambda: self.submit(DurationElapsed(turn_id)),
        )
        turn = Turn(id=turn_id, timers=timers)
        stream = self._stream_factory(
            lambda text, is_final: self.submit(TranscriptUpdate(turn_id, text, is_final)),
            lambda message: self.submit(TranscriptionFault(turn_id, message)),
        )
        turn.stream = stream
        self.session.turn = turn
        self.session.metrics["turn_count"] += 1

        try:
            await stream.start()
        except Exception as exc:
            logger.error("[Session %s] Could not open transcription stream: %s", self.session.id, exc)
            await self._fail_turn(turn, ErrorEnvelope.from_exception(TranscriptionError(str(exc))))
            return False

        turn.timers.start()
        logger.info("[Session %s] Turn %s listening.", self.session.id, turn_id)
        await self._transition(SessionState.LISTENING, turn)
        return True

    async def _on_stop(self) -> None:
        turn = self.session.turn
        if self.session.state is not SessionState.LISTENING or not self.session.is_live(turn):
            logger.debug("[Session %s] stop_recording ignored in %s.", self.session.id, self.session.state.value)
            return
        await self._begin_finalize(turn, "stop")

    async def _on_silence(self, event: SilenceElapsed) -> None:
        turn = self._listening_turn(event.turn_id)
        if turn is not None:
            await self._begin_finalize(turn, "silence")

    async def _on_duration(self, event: DurationElapsed) -> None:
        turn = self._listening_turn(event.turn_id)
        if turn is None:
            return
        await self._send_error(ErrorEnvelope(ErrorCode.MAX_DURATION, MAX_DURATION_MESSAGE, self.session.id))
        await self._begin_finalize(turn, "max_duration")

    async def _on_transcript(self, event: TranscriptUpdate) -> None:
        turn = self.session.turn
        if not self.session.is_live(turn) or turn.id != event.turn_id:
            return
        state = self.session.state
        if state not in (SessionState.LISTENING, SessionState.TRANSCRIBING_FINAL):
            return
        self.session.touch()
        await self._send(partial_transcript_message(event.text, event.is_final), turn)
        if state is SessionState.LISTENING:
            turn.timers.touch()

    async def _on_fault(self, event: TranscriptionFault) -> None:
        turn = self._listening_turn(event.turn_id)
        if turn is None or turn.faulted:
            logger.info("[Session %s] Transcription fault (already reported or not listening): %s",
                        self.session.id, event.message)
            return
        # Keep the turn; normal endpointing finalizes what was captured.
        turn.faulted = True
        logger.warning("[Session %s] Transcription fault: %s", self.session.id, event.message)
        await self._send_error(ErrorEnvelope.from_exception(TranscriptionError(event.message), self.session.id))

    async def _on_cancel(self) -> None:
        turn = self.session.turn
        self.session.metrics["cancel_count"] += 1
        if turn is not None:
            turn.cancel()
            self.session.turn = None
            await self._release_turn(turn)
            logger.info("[Session %s] Turn %s cancelled.", self.session.id, turn.id)
        await self._transition(SessionState.IDLE)

    def _listening_turn(self, turn_id: str) -> Turn | None:
        turn = self.session.turn
        if (
            self.session.state is SessionState.LISTENING
            and self.session.is_live(turn)
            and turn.id == turn_id
        ):
            return turn
        return None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _begin_finalize(self, turn: Turn, reason: str) -> None:
        turn.timers.clear()
        stream = turn.stream
        logger.info(
            "[Session %s] Finalizing turn %s (%s) after %.2fs.",
            self.session.id, turn.id, reason, time.monotonic() - turn.started_at,
        )
        await self._transition(SessionState.TRANSCRIBING_FINAL, turn)
        previous = self._pipeline_task
        self._pipeline_task = asyncio.create_task(self._run_pipeline(turn, stream, previous))

    async def _run_pipeline(
        self,
        turn: Turn,
        stream: TranscriptionStream | None,
        previous: asyncio.Task | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        live = self.session.is_live
        try:
            transcript = await run_stt(stream) if stream is not None else ""
            turn.take_stream()
            if not live(turn):
                return
            if not transcript:
                if turn.faulted:
                    await self._finish_turn(turn, SessionState.IDLE)
                    return
                await self._send_error(ErrorEnvelope(ErrorCode.INVALID_INPUT, NO_SPEECH_MESSAGE, self.session.id))
                await self._finish_turn(turn, SessionState.IDLE)
                return
            await self._send(final_transcript_message(transcript), turn)

            if not await self._transition(SessionState.GENERATING_RESPONSE, turn):
                return
            response = await run_llm(transcript, self._generator)
            if not live(turn):
                return
            await self._send(llm_response_message(response.summary, response.bullets, response.next_action), turn)

            if not await self._transition(SessionState.SYNTHESIZING, turn):
                return
            audio = await run_tts(response.summary, self._synthesizer)
            if not live(turn):
                return
            await self._send(tts_audio_message(audio.audio, audio.mime_type), turn)
            await self._finish_turn(turn, SessionState.READY_TO_PLAY)
        except ProviderError as exc:
            logger.error(
                "[Session %s] %s stage failed: %s (trace=%s)",
                self.session.id, exc.stage, exc, current_trace_id(),
            )
            await self._fail_turn(turn, ErrorEnvelope.from_exception(exc, self.session.id))
        except Exception as exc:
            logger.error("[Session %s] Pipeline error: %s", self.session.id, exc, exc_info=True)
            await self._fail_turn(turn, ErrorEnvelope(ErrorCode.CONNECTION_ERROR, UNEXPECTED_MESSAGE, self.session.id))

    async def _finish_turn(self, turn: Turn, final_state: SessionState) -> None:
        if not self.session.is_live(turn):
            return
        self.session.turn = None
        await self._release_turn(turn)
        await self._transition(final_state)

    async def _fail_turn(self, turn: Turn | None, error: ErrorEnvelope) -> None:
        """Report *error* and return to idle, unless the turn is already gone."""
        if turn is not None and not self.session.is_live(turn):
            return
        await self._send_error(error)
        if turn is not None:
            await self._finish_turn(turn, SessionState.IDLE)
        else:
            await self._transition(SessionState.IDLE)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _release_turn(self, turn: Turn) -> None:
        """Clear the turn's timers and close its stream. Safe to repeat."""
        turn.timers.clear()
        stream = turn.take_stream()
        if stream is None:
            return
        try:
            await stream.close()
        except Exception as exc:
            logger.debug("[Session %s] Stream close failed: %s", self.session.id, exc)

    async def teardown(self) -> None:
        """Release everything the session holds. Idempotent."""
        if self._torn_down:
            return
        self._torn_down = True
        self.session.closed = True

        turn, self.session.turn = self.session.turn, None
        if turn is not None:
            turn.cancel()
            await self._release_turn(turn)
        self.session.state = SessionState.IDLE

        if self._admission is not None:
            self._admission.release()
        logger.info(
            "[Session %s] Closed after %d turn(s), %d cancel(s), %d error(s).",
            self.session.id,
            self.session.metrics["turn_count"],
            self.session.metrics["cancel_count"],
            self.session.metrics["error_count"],
        )

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def _transition(self, state: SessionState, turn: Turn | None = None) -> bool:
        """Move to *state*, emitting one status message on an actual change.

        With *turn* given, the move only happens while that turn is live.
        """
        if turn is not None and not self.session.is_live(turn):
            return False
        if self.session.state is state:
            return True
        logger.info("[Session %s] %s → %s", self.session.id, self.session.state.value, state.value)
        self.session.state = state
        await self._send(status_message(state.status))
        return True

    async def _send(self, message: dict, turn: Turn | None = None) -> None:
        if self.session.closed:
            return
        if turn is not None and not self.session.is_live(turn):
            return
        try:
            await self.session.websocket.send_json(message)
        except Exception as exc:
            logger.debug("[Session %s] Send failed (%s): %s", self.session.id, message.get("type"), exc)

    async def _send_error(self, error: ErrorEnvelope) -> None:
        if self.session.closed:
            return
        self.session.metrics["error_count"] += 1
        error.session_id = error.session_id or self.session.id
        await send_error(self.session.websocket, error)
