"""
controller.py — Conversation session orchestration
==================================================
ConversationController is the public face of the engine.  It owns one
session at a time: an audio source, a transcription link, an audio pump
task and a decision loop task.

Everything that can change turn-taking state arrives as a zero-argument
callable on the session queue (socket events, timer expiries) and runs
to completion inside the decision loop before the next one starts.

States:
    IDLE      → never started
    LISTENING → capturing and streaming
    MUTED     → LISTENING with automatic decisions suspended
    STOPPED   → stopped by the caller, by the service, or by an error

Every failure is terminal for the session: the controller records the
message, calls ``on_error(kind, message)``, releases the device and the
socket, and moves to STOPPED.  Restarting is the caller's decision.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from voice_engine.config import AudioConfig, StreamingConfig, VoiceEngineConfig
from voice_engine.errors import (
    MSG_START_FAILED,
    NetworkError,
    ProtocolError,
    VoiceEngineError,
)
from voice_engine.insights import SessionInsights
from voice_engine.link import TranscriptionLink
from voice_engine.protocol import (
    CLOSE_MESSAGES,
    Begin,
    Closed,
    ContentSafety,
    LinkEvent,
    ProtocolErrorEvent,
    Sentiment,
    SpeakerLabels,
    Termination,
    Transcript,
    describe_close,
)
from voice_engine.quality import QualityMetrics, QualityTracker
from voice_engine.scheduling import LoopScheduler, Scheduler
from voice_engine.speech_token import fetch_speech_token
from voice_engine.turns import REASON_MANUAL, TurnTakingEngine

log = logging.getLogger("voice_engine.controller")

UtteranceCallback = Callable[[str], Any]
ErrorCallback = Callable[[str, str], Any]
AudioFactory = Callable[[AudioConfig], Any]
LinkFactory = Callable[[StreamingConfig, Callable[[LinkEvent], None]], Any]
TokenProvider = Callable[[], Awaitable[str]]


class ControllerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    MUTED = "muted"
    STOPPED = "stopped"


class ConversationSnapshot(BaseModel):
    """Read-only view for display; camelCase when dumped by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    state: ControllerState
    is_listening: bool
    is_continuous_mode: bool
    transcript: str
    interim_transcript: str
    is_muted: bool
    auto_send_countdown: Optional[int] = None
    auto_send_reason: Optional[str] = None
    quality_metrics: QualityMetrics
    error: Optional[str] = None
    current_speaker: Optional[str] = None
    sentiment: Optional[str] = None
    content_safety_risk: Optional[str] = None


def _default_audio_factory(config: AudioConfig):
    # Imported here so PortAudio is only loaded when a microphone is used.
    from voice_engine.audio import AudioSource
    return AudioSource(config)


def _close_error(code: int, reason: str) -> VoiceEngineError:
    message = describe_close(code, reason)
    if code in CLOSE_MESSAGES or code >= 4000:
        return ProtocolError(message, code=code, reason=reason)
    return NetworkError(message)


@dataclass
class _Session:
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    audio: Any = None
    link: Any = None
    loop_task: Optional[asyncio.Task] = None
    pump_task: Optional[asyncio.Task] = None
    teardown_task: Optional[asyncio.Task] = None
    closing: bool = False
    audio_finished: asyncio.Event = field(default_factory=asyncio.Event)


class ConversationController:
    def __init__(
        self,
        config: Optional[VoiceEngineConfig] = None,
        *,
        on_error: Optional[ErrorCallback] = None,
        audio_factory: Optional[AudioFactory] = None,
        link_factory: Optional[LinkFactory] = None,
        token_provider: Optional[TokenProvider] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config or VoiceEngineConfig()
        self.on_error = on_error
        self._audio_factory = audio_factory or _default_audio_factory
        self._link_factory = link_factory or TranscriptionLink
        self._token_provider = token_provider or self._fetch_token

        self._session: Optional[_Session] = None
        self._state = ControllerState.IDLE
        self._on_utterance: Optional[UtteranceCallback] = None
        self._continuous = False
        self._callback_tasks: set[asyncio.Task] = set()

        self.error: Optional[str] = None
        self.utterances_sent = 0
        self.last_utterance: Optional[str] = None

        self.quality = QualityTracker(self.config.quality)
        self.insights = SessionInsights(content_safety_enabled=self.config.streaming.content_safety)
        self.engine = TurnTakingEngine(
            self.config.turn_taking,
            scheduler or LoopScheduler(self._post),
            self._on_engine_send,
        )

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        if self._session is not None and not self._session.closing:
            return ControllerState.MUTED if self.engine.muted else ControllerState.LISTENING
        return self._state

    @property
    def is_listening(self) -> bool:
        return self.state in (ControllerState.LISTENING, ControllerState.MUTED)

    @property
    def is_continuous_mode(self) -> bool:
        return self._continuous

    @property
    def is_muted(self) -> bool:
        return self.engine.muted

    @property
    def transcript(self) -> str:
        return self.engine.transcript

    @property
    def interim_transcript(self) -> str:
        return self.engine.interim_transcript

    def snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            state=self.state,
            is_listening=self.is_listening,
            is_continuous_mode=self._continuous,
            transcript=self.engine.transcript,
            interim_transcript=self.engine.interim_transcript,
            is_muted=self.engine.muted,
            auto_send_countdown=self.engine.auto_send_countdown,
            auto_send_reason=self.engine.auto_send_reason,
            quality_metrics=self.quality.metrics(),
            error=self.error,
            current_speaker=self.insights.current_speaker,
            sentiment=self.insights.sentiment.sentiment if self.insights.sentiment else None,
            content_safety_risk=self.insights.content_safety.risk_level if self.insights.content_safety else None,
        )

    async def wait_audio_finished(self) -> None:
        """Block until the current audio source runs dry (WAV replay)."""
        session = self._session
        if session is not None:
            await session.audio_finished.wait()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_listening(self, on_utterance: Optional[UtteranceCallback] = None) -> bool:
        """Acquire the device, fetch a token and open the socket.

        Returns False when startup failed; the error has then already been
        reported through ``on_error`` and the controller is STOPPED.
        """
        if self._session is not None and not self._session.closing:
            return True
        if on_utterance is not None:
            self._on_utterance = on_utterance

        self.error = None
        self.engine.reset()
        session = _Session()
        self._session = session
        log.info("event=session_starting continuous=%s", self._continuous)

        try:
            session.audio = self._audio_factory(self.config.audio)
            session.audio.start()
            token = await self._token_provider()
            if not session.closing:
                session.link = self._link_factory(self.config.streaming, self._on_link_event)
                await session.link.open(token)
        except VoiceEngineError as exc:
            if not session.closing:
                await self._abort_start(session, exc)
                return False
        except Exception as exc:
            log.error("event=session_start_failed error=%s", exc, exc_info=True)
            if not session.closing:
                await self._abort_start(session, VoiceEngineError(MSG_START_FAILED))
                return False

        if session.closing:
            # Stopped while startup was awaiting; teardown may have missed the link.
            await self._release_abandoned(session)
            return False
        session.loop_task = asyncio.create_task(self._decision_loop(session))
        session.pump_task = asyncio.create_task(self._pump_audio(session))
        self._state = ControllerState.LISTENING
        log.info("event=session_started continuous=%s", self._continuous)
        return True

    async def stop_listening(self) -> None:
        session = self._session
        if session is None:
            return
        self.engine.cancel_timers()
        await self._teardown(session)
        self._state = ControllerState.STOPPED

    async def start_continuous_mode(self, on_utterance: UtteranceCallback) -> bool:
        log.info("event=continuous_mode_starting")
        self._on_utterance = on_utterance
        self._continuous = True
        self.engine.set_auto_send(True)
        started = await self.start_listening()
        if not started:
            self._continuous = False
            self.engine.set_auto_send(False)
        return started

    async def stop_continuous_mode(self) -> None:
        log.info("event=continuous_mode_stopping pending=%s", self.engine.has_pending)
        self._continuous = False
        self._on_utterance = None
        self.engine.set_auto_send(False)
        self.engine.reset()
        await self.stop_listening()

    async def cancel_recording(self) -> None:
        """Stop everything and discard transcript, insights and quality history."""
        log.info("event=recording_cancelled pending=%s", self.engine.has_pending)
        await self.stop_listening()
        self.engine.reset()
        self.insights.reset()
        self.quality.reset()
        if self._continuous:
            self._continuous = False
            self._on_utterance = None
            self.engine.set_auto_send(False)

    async def cleanup(self) -> None:
        """Release every resource; safe to call at any point, any number of times."""
        session = self._session
        if session is not None:
            await self._teardown(session)
            if self._state is not ControllerState.IDLE:
                self._state = ControllerState.STOPPED
        self.engine.cancel_timers()
        for task in list(self._callback_tasks):
            task.cancel()
        if self._callback_tasks:
            await asyncio.gather(*self._callback_tasks, return_exceptions=True)
        self._callback_tasks.clear()

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def set_muted(self, muted: bool) -> None:
        self.engine.set_muted(muted)

    def toggle_mute(self) -> bool:
        self.engine.set_muted(not self.engine.muted)
        return self.engine.muted

    def send_current_transcript(self) -> Optional[str]:
        """Dispatch the accumulated text now, whether or not it looks finished."""
        if self._on_utterance is None:
            log.debug("event=manual_send_skipped reason=no_callback")
            return None
        text = self.engine.send_now(REASON_MANUAL)
        if text is not None:
            self.insights.clear_current()
        return text

    def reset_transcript(self) -> None:
        self.engine.reset()
        self.insights.clear_current()

    # ------------------------------------------------------------------
    # Decision loop
    # ------------------------------------------------------------------

    def _post(self, fn: Callable[[], None]) -> None:
        session = self._session
        if session is not None and session.loop_task is not None and not session.closing:
            session.queue.put_nowait(fn)
        else:
            fn()

    def _on_link_event(self, event: LinkEvent) -> None:
        session = self._session
        if session is None:
            return
        session.queue.put_nowait(lambda: self._handle_link_event(session, event))

    async def _decision_loop(self, session: _Session) -> None:
        while True:
            item = await session.queue.get()
            if item is None:
                return
            try:
                item()
            except Exception as exc:
                log.error("event=decision_error error=%s", exc, exc_info=True)
                self._fail(session, VoiceEngineError(MSG_START_FAILED))

    def _handle_link_event(self, session: _Session, event: LinkEvent) -> None:
        if session.closing:
            return

        if isinstance(event, Transcript):
            self._handle_transcript(event)
        elif isinstance(event, Sentiment):
            self.insights.on_sentiment(event)
        elif isinstance(event, SpeakerLabels):
            self.insights.on_speaker_labels(event)
        elif isinstance(event, ContentSafety):
            self.insights.on_content_safety(event)
        elif isinstance(event, Begin):
            log.info("event=stt_session_begin id=%s expires_at=%s", event.session_id, event.expires_at)
        elif isinstance(event, Termination):
            log.info("event=stt_session_terminated audio_sec=%s", event.audio_duration_seconds)
        elif isinstance(event, ProtocolErrorEvent):
            self._fail(session, ProtocolError(event.message))
        elif isinstance(event, Closed):
            if event.is_normal:
                log.info("event=stt_closed code=%d", event.code)
                self._spawn_teardown(session)
            else:
                self._fail(session, _close_error(event.code, event.reason))

    def _handle_transcript(self, event: Transcript) -> None:
        ev = event.event
        if not ev.text:
            return
        self.insights.on_transcript_quality(ev.confidence, ev.timestamp_ms)
        if not ev.is_final:
            self.engine.handle_interim(ev.text)
            return
        self.quality.record(ev.confidence)
        self.engine.handle_final(ev.text, speaker=ev.speaker_id or self.insights.current_speaker)

    async def _pump_audio(self, session: _Session) -> None:
        try:
            async for frame in session.audio.frames():
                await session.link.send(frame)
        finally:
            session.audio_finished.set()
        log.info("event=audio_source_drained")

    # ------------------------------------------------------------------
    # Outbound callbacks
    # ------------------------------------------------------------------

    def _on_engine_send(self, text: str, reason: str) -> None:
        callback = self._on_utterance
        if callback is None:
            log.warning("event=utterance_dropped reason=no_callback chars=%d", len(text))
            return
        self.utterances_sent += 1
        self.last_utterance = text
        asyncio.get_running_loop().call_soon(self._invoke, callback, (text,), "utterance")

    def _invoke(self, callback: Callable, args: tuple, scope: str) -> None:
        try:
            result = callback(*args)
        except Exception as exc:
            log.error("event=callback_error scope=%s error=%s", scope, exc, exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("event=callback_error scope=async error=%s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Failure and teardown
    # ------------------------------------------------------------------

    def _report(self, exc: VoiceEngineError) -> None:
        self.error = exc.message
        self._state = ControllerState.STOPPED
        log.error("event=session_error kind=%s message=%s", exc.kind, exc.message)
        if self.on_error is not None:
            asyncio.get_running_loop().call_soon(self._invoke, self.on_error, (exc.kind, exc.message), "error")

    def _fail(self, session: _Session, exc: VoiceEngineError) -> None:
        if session.closing:
            return
        self._report(exc)
        # A failed session delivers nothing more, even on a later mute.
        self.engine.reset()
        self._spawn_teardown(session)

    def _spawn_teardown(self, session: _Session) -> None:
        if session.teardown_task is None:
            session.teardown_task = asyncio.create_task(self._teardown(session))
        if self._state is not ControllerState.STOPPED:
            self._state = ControllerState.STOPPED

    async def _abort_start(self, session: _Session, exc: VoiceEngineError) -> None:
        self._report(exc)
        await self._teardown(session)

    async def _release_abandoned(self, session: _Session) -> None:
        log.info("event=session_start_abandoned link=%s", session.link is not None)
        if session.teardown_task is not None:
            await asyncio.shield(session.teardown_task)
        if session.link is not None:
            await session.link.close()

    async def _teardown(self, session: _Session) -> None:
        if session.teardown_task is not None and session.teardown_task is not asyncio.current_task():
            await asyncio.shield(session.teardown_task)
            return
        if session.closing:
            return
        session.closing = True
        log.info("event=session_teardown")

        current = asyncio.current_task()
        if session.pump_task is not None and session.pump_task is not current:
            session.pump_task.cancel()
            try:
                await session.pump_task
            except asyncio.CancelledError:
                pass

        if session.audio is not None:
            try:
                session.audio.stop()
            except Exception as exc:
                log.warning("event=audio_stop_error error=%s", exc)

        if session.link is not None:
            await session.link.close()

        self.engine.cancel_timers()
        session.queue.put_nowait(None)
        if session.loop_task is not None and session.loop_task is not current:
            await session.loop_task

        if self._session is session:
            self._session = None
        log.info("event=session_closed")

    async def _fetch_token(self) -> str:
        return await fetch_speech_token(self.config.token.endpoint, self.config.token.timeout_sec)
