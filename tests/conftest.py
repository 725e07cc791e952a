"""Shared fakes for the session tests.

The fakes stand in for the three provider seams and the client socket so
the orchestrator runs for real on the test's event loop.
"""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Callable

import pytest_asyncio

from voicepipe.audio.stt import TranscriptionStream
from voicepipe.audio.tts import SynthesizedAudio
from voicepipe.llm.responder import StructuredResponse
from voicepipe.pipeline.orchestrator import SessionOrchestrator
from voicepipe.pipeline.registry import SessionRegistry
from voicepipe.pipeline.session_context import SessionContext


class RecordingSocket:
    """Captures everything the session sends, with loop timestamps."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.times: list[float] = []

    async def send_json(self, data: dict) -> None:
        self.messages.append(data)
        self.times.append(asyncio.get_running_loop().time())

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == msg_type]

    def statuses(self) -> list[str]:
        return [m["status"] for m in self.of_type("status")]

    def error_codes(self) -> list[str]:
        return [m["code"] for m in self.of_type("error")]

    def index_of(self, predicate: Callable[[dict], bool]) -> int:
        for i, m in enumerate(self.messages):
            if predicate(m):
                return i
        return -1

    def time_of_status(self, status: str, occurrence: int = 0) -> float:
        seen = 0
        for m, t in zip(self.messages, self.times):
            if m["type"] == "status" and m["status"] == status:
                if seen == occurrence:
                    return t
                seen += 1
        raise AssertionError(f"status {status!r} #{occurrence} never sent")

    async def wait_for_status(self, status: str, timeout: float = 2.0, occurrence: int = 0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while self.statuses().count(status) <= occurrence:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"timed out waiting for status {status!r}; got {self.statuses()}")
            await asyncio.sleep(0.005)


class FakeStream(TranscriptionStream):
    """In-memory transcription stream; tests call ``emit`` to play the provider."""

    def __init__(
        self,
        on_update,
        on_fault,
        *,
        start_error: Exception | None = None,
        finish_error: Exception | None = None,
        finish_text: str | None = None,
        fault_on_send: bool = False,
    ) -> None:
        super().__init__(on_update, on_fault)
        self.sent: list[bytes] = []
        self.started = False
        self.finish_calls = 0
        self.close_calls = 0
        self._start_error = start_error
        self._finish_error = finish_error
        self._finish_text = finish_text
        self._fault_on_send = fault_on_send

    async def start(self) -> None:
        if self._start_error is not None:
            raise self._start_error
        self.started = True

    def send(self, audio_chunk: bytes) -> None:
        self.sent.append(audio_chunk)
        if self._fault_on_send:
            self._on_fault("Transcription connection closed unexpectedly")

    def emit(self, segment: str, is_final: bool) -> None:
        self._segment(segment, is_final)

    def fault(self, message: str) -> None:
        self._on_fault(message)

    async def finish(self) -> str:
        self.finish_calls += 1
        if self._finish_error is not None:
            raise self._finish_error
        if self._finish_text is not None:
            return self._finish_text
        return self.accumulator.text

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def closed(self) -> bool:
        return self.close_calls > 0


class FakeGenerator:
    def __init__(self, *, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.calls: list[str] = []
        self.error = error
        self.gate = gate

    async def generate(self, text: str) -> StructuredResponse:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return StructuredResponse(
            summary=f"You said: {text}",
            bullets=["first point", "second point"],
            next_action="Ask a follow-up question",
        )


class FakeSynthesizer:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.error = error

    async def synthesize(self, text: str) -> SynthesizedAudio:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return SynthesizedAudio(b"RIFF-fake-wav", "audio/wav")


def audio_frame(payload: bytes = b"\x00\x01" * 160) -> str:
    return json.dumps({"type": "audio_chunk", "data": base64.b64encode(payload).decode()})


STOP_FRAME = json.dumps({"type": "stop_recording"})
CANCEL_FRAME = json.dumps({"type": "cancel"})


class SessionHarness:
    """One orchestrator wired to fakes, with its consumer task running."""

    def __init__(
        self,
        *,
        silence_ms: float = 500,
        max_recording_seconds: float = 5.0,
        generator: Any = None,
        synthesizer: Any = None,
        stream_kwargs: dict | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.socket = RecordingSocket()
        self.streams: list[FakeStream] = []
        self.generator = generator or FakeGenerator()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.registry = registry or SessionRegistry()
        self.admission = self.registry.admit("10.0.0.1")
        self.session = SessionContext(id="session-test", websocket=self.socket, client_id="10.0.0.1")
        stream_kwargs = stream_kwargs or {}

        def factory(on_update, on_fault) -> FakeStream:
            stream = FakeStream(on_update, on_fault, **stream_kwargs)
            self.streams.append(stream)
            return stream

        self.orchestrator = SessionOrchestrator(
            self.session,
            stream_factory=factory,
            generator=self.generator,
            synthesizer=self.synthesizer,
            silence_ms=silence_ms,
            max_recording_seconds=max_recording_seconds,
            admission=self.admission,
        )
        self.runner = asyncio.create_task(self.orchestrator.run())

    @property
    def stream(self) -> FakeStream:
        return self.streams[-1]

    def audio(self, count: int = 1) -> None:
        for _ in range(count):
            self.orchestrator.handle_frame(audio_frame())

    def stop(self) -> None:
        self.orchestrator.handle_frame(STOP_FRAME)

    def cancel(self) -> None:
        self.orchestrator.handle_frame(CANCEL_FRAME)

    async def settle(self) -> None:
        await asyncio.wait_for(self.orchestrator.settle(), timeout=5.0)

    async def shutdown(self) -> None:
        self.orchestrator.close()
        await asyncio.wait({self.runner}, timeout=5.0)


@pytest_asyncio.fixture
async def make_session():
    created: list[SessionHarness] = []

    def _make(**kwargs) -> SessionHarness:
        harness = SessionHarness(**kwargs)
        created.append(harness)
        return harness

    yield _make

    for harness in created:
        await harness.shutdown()

