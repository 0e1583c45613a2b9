import asyncio
from typing import Callable, Optional

import pytest

from voice_engine.config import VoiceEngineConfig
from voice_engine.controller import ConversationController
from voice_engine.protocol import Closed, Transcript, TranscriptEvent
from voice_engine.scheduling import Timer


class ManualScheduler:
    """Deterministic clock: timers fire only when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self._seq = 0
        self._pending: list[tuple[float, int, Timer, Callable[[], None]]] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, fn: Callable[[], None]) -> Timer:
        timer = Timer()
        self._seq += 1
        self._pending.append((self.now + max(delay, 0.0), self._seq, timer, fn))
        return timer

    @property
    def active(self) -> int:
        return sum(1 for _, _, timer, _ in self._pending if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [p for p in self._pending if p[0] <= target and not p[2].cancelled]
            if not due:
                break
            item = min(due, key=lambda p: (p[0], p[1]))
            self._pending.remove(item)
            self.now = item[0]
            item[2].fired = True
            item[3]()
        self.now = target
        self._pending = [p for p in self._pending if not p[2].cancelled]


class FakeAudio:
    def __init__(self, config, fail: Optional[Exception] = None):
        self.config = config
        self.fail = fail
        self.started = False
        self.stopped = 0
        self._queue: asyncio.Queue = asyncio.Queue()

    def start(self) -> None:
        if self.fail is not None:
            raise self.fail
        self.started = True

    def push(self, frame: bytes) -> None:
        self._queue.put_nowait(frame)

    async def frames(self):
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def stop(self) -> None:
        self.stopped += 1
        self._queue.put_nowait(None)


class FakeLink:
    def __init__(self, config, on_event, fail: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        self.config = config
        self.on_event = on_event
        self.fail = fail
        self.gate = gate
        self.token = None
        self.closed = False
        self.sent: list[bytes] = []

    async def open(self, token: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        if not self.closed:
            self.token = token

    async def send(self, frame: bytes) -> None:
        if self.token is not None and not self.closed:
            self.sent.append(frame)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.on_event(Closed(code=1000, reason="normal"))

    def emit(self, text: str, final: bool = True, confidence: float = 0.9, speaker: Optional[str] = None) -> None:
        self.on_event(Transcript(TranscriptEvent(
            text=text, is_final=final, confidence=confidence, speaker_id=speaker, timestamp_ms=0,
        )))


async def _settle(rounds: int = 20) -> None:
    """Let queued loop callbacks and the decision loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def sent():
    return []


@pytest.fixture
def harness():
    """Build a controller wired to fake audio and link collaborators."""

    class Harness:
        def __init__(self):
            self.audios: list[FakeAudio] = []
            self.links: list[FakeLink] = []
            self.errors: list[tuple[str, str]] = []
            self.audio_fail: Optional[Exception] = None
            self.link_fail: Optional[Exception] = None
            self.token_fail: Optional[Exception] = None
            self.token_gate: Optional[asyncio.Event] = None
            self.link_gate: Optional[asyncio.Event] = None

        @property
        def audio(self) -> FakeAudio:
            return self.audios[-1]

        @property
        def link(self) -> FakeLink:
            return self.links[-1]

        def _audio_factory(self, config):
            audio = FakeAudio(config, fail=self.audio_fail)
            self.audios.append(audio)
            return audio

        def _link_factory(self, config, on_event):
            link = FakeLink(config, on_event, fail=self.link_fail, gate=self.link_gate)
            self.links.append(link)
            return link

        async def _token(self) -> str:
            if self.token_gate is not None:
                await self.token_gate.wait()
            if self.token_fail is not None:
                raise self.token_fail
            return "test-key"

        def build(self, config: Optional[VoiceEngineConfig] = None, scheduler=None) -> ConversationController:
            return ConversationController(
                config or VoiceEngineConfig(),
                on_error=lambda kind, message: self.errors.append((kind, message)),
                audio_factory=self._audio_factory,
                link_factory=self._link_factory,
                token_provider=self._token,
                scheduler=scheduler,
            )

    return Harness()


@pytest.fixture
def settle():
    return _settle
