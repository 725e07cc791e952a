"""Deepgram streaming STT adapter for real-time PCM-16 transcription.

``TranscriptionStream`` is the contract the session orchestrator consumes:
``start()``, ``send(chunk)``, ``finish() -> text`` and ``close()``.  Results
are pushed out through two plain callables (``on_update``/``on_fault``) that
the orchestrator binds to its inbox queue, so nothing here re-enters session
state.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets

from voicepipe.constants import FINISH_FALLBACK_TIMEOUT, INPUT_CHANNELS, INPUT_SAMPLE_RATE, UTTERANCE_END_MS

logger = logging.getLogger(__name__)

UpdateSink = Callable[[str, bool], None]
FaultSink = Callable[[str], None]


class TranscriptAccumulator:
    """Joins provider-final segments; renders partials without storing them."""

    def __init__(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def add(self, segment: str, is_final: bool) -> str:
        """Record *segment* and return the text a client should display."""
        segment = segment.strip()
        if not segment:
            return self._text
        if is_final:
            self._text = f"{self._text} {segment}" if self._text else segment
            return self._text
        return f"{self._text} {segment}" if self._text else segment


class TranscriptionStream(abc.ABC):
    """One utterance's streaming transcription connection."""

    def __init__(self, on_update: UpdateSink, on_fault: FaultSink) -> None:
        self._on_update = on_update
        self._on_fault = on_fault
        self.accumulator = TranscriptAccumulator()

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin connecting; must return without waiting for the provider."""

    @abc.abstractmethod
    def send(self, audio_chunk: bytes) -> None:
        """Queue *audio_chunk* for the provider. Never blocks."""

    @abc.abstractmethod
    async def finish(self) -> str:
        """Return the accumulated final transcript. Never raises, never hangs."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection. Idempotent and never raises."""

    def _segment(self, segment: str, is_final: bool) -> None:
        if not segment.strip():
            return
        display = self.accumulator.add(segment, is_final)
        self._on_update(display, is_final)


StreamFactory = Callable[[UpdateSink, FaultSink], TranscriptionStream]


class DeepgramStream(TranscriptionStream):
    """Deepgram live ``/v1/listen`` connection for a single turn.

    Parameters
    ----------
    api_key : str
        Deepgram API key (from DEEPGRAM_API_KEY env var).
    sample_rate : int
        Sample rate of the incoming PCM stream (default 16 kHz).
    fallback_timeout : float
        Upper bound on how long ``finish()`` waits for the utterance end.
    """

    WS_URL = "wss://api.deepgram.com/v1/listen"

    def __init__(
        self,
        api_key: str,
        on_update: UpdateSink,
        on_fault: FaultSink,
        *,
        sample_rate: int = INPUT_SAMPLE_RATE,
        fallback_timeout: float = FINISH_FALLBACK_TIMEOUT,
    ) -> None:
        super().__init__(on_update, on_fault)
        self._api_key = api_key
        self._sample_rate = sample_rate
        self._fallback_timeout = fallback_timeout

        # Audio and control frames share one queue so Finalize lands after the audio.
        self._outbox: asyncio.Queue[bytes | str | None] = asyncio.Queue()
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._utterance_end = asyncio.Event()
        self._disconnected = asyncio.Event()
        self._closing = False

    @property
    def url(self) -> str:
        return (
            f"{self.WS_URL}"
            f"?model=nova-2&language=en-US&smart_format=true"
            f"&interim_results=true&utterance_end_ms={UTTERANCE_END_MS}&vad_events=true"
            f"&encoding=linear16&sample_rate={self._sample_rate}&channels={INPUT_CHANNELS}"
        )

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def send(self, audio_chunk: bytes) -> None:
        if self._closing or self._disconnected.is_set():
            return
        self._outbox.put_nowait(audio_chunk)

    async def finish(self) -> str:
        if not self._disconnected.is_set():
            self._utterance_end.clear()
            self._outbox.put_nowait(json.dumps({"type": "Finalize"}))
            utterance = asyncio.create_task(self._utterance_end.wait())
            gone = asyncio.create_task(self._disconnected.wait())
            try:
                done, _ = await asyncio.wait(
                    {utterance, gone},
                    timeout=self._fallback_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    logger.info(
                        "[STT] No utterance end within %.1fs — using accumulated text.",
                        self._fallback_timeout,
                    )
            finally:
                utterance.cancel()
                gone.cancel()
        return self.accumulator.text

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(json.dumps({"type": "CloseStream"}))
        self._outbox.put_nowait(None)
        task, self._task = self._task, None
        if task is None:
            self._disconnected.set()
            return
        done, _ = await asyncio.wait({task}, timeout=1.0)
        if not done:
            logger.debug("[STT] Deepgram stream did not close in time — cancelling.")
            task.cancel()

    # ------------------------------------------------------------------
    # Connection internals
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            async with websockets.connect(self.url, additional_headers=headers) as ws:
                self._ws = ws
                logger.info("[STT] Deepgram stream open.")
                sender = asyncio.create_task(self._send_loop(ws))
                try:
                    await self._receive_loop(ws)
                finally:
                    sender.cancel()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closing:
                logger.warning("[STT] Deepgram connection error: %s", exc)
                self._on_fault(f"Transcription connection failed: {exc}")
        finally:
            self._ws = None
            self._disconnected.set()

    async def _send_loop(self, ws: Any) -> None:
        """Drain the outbox to Deepgram until the ``None`` sentinel."""
        while True:
            item = await self._outbox.get()
            if item is None:
                await ws.close()
                return
            await ws.send(item)

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                text = raw if isinstance(raw, str) else raw.decode()
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    continue
                self._handle_message(payload)
        except websockets.exceptions.ConnectionClosed as exc:
            if not self._closing:
                logger.warning("[STT] Deepgram closed unexpectedly: %s", exc)
                self._on_fault("Transcription connection closed unexpectedly")

    def _handle_message(self, payload: dict) -> None:
        msg_type = payload.get("type", "")
        if msg_type == "Results":
            alternatives = payload.get("channel", {}).get("alternatives") or [{}]
            transcript = alternatives[0].get("transcript", "")
            self._segment(transcript, bool(payload.get("is_final", False)))
            if payload.get("from_finalize"):
                self._utterance_end.set()
        elif msg_type == "UtteranceEnd":
            self._utterance_end.set()
        elif msg_type == "Metadata":
            logger.debug("[STT] Deepgram metadata: request_id=%s", payload.get("request_id"))
        elif msg_type == "Error":
            logger.warning("[STT] Deepgram error frame: %s", payload)
            self._on_fault(str(payload.get("description") or payload.get("message") or "Deepgram error"))


class DeepgramSTT:
    """Factory for per-turn ``DeepgramStream`` instances."""

    def __init__(
        self,
        api_key: str,
        *,
        sample_rate: int = INPUT_SAMPLE_RATE,
        fallback_timeout: float = FINISH_FALLBACK_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._sample_rate = sample_rate
        self._fallback_timeout = fallback_timeout

    def create_stream(self, on_update: UpdateSink, on_fault: FaultSink) -> DeepgramStream:
        return DeepgramStream(
            self._api_key,
            on_update,
            on_fault,
            sample_rate=self._sample_rate,
            fallback_timeout=self._fallback_timeout,
        )
