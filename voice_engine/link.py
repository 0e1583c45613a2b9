"""
link.py — Streaming transcription socket
========================================
One TranscriptionLink owns one websocket for one session.  Inbound
messages are parsed into typed events and handed to ``on_event`` in
arrival order; the link never makes decisions itself.

Lifecycle:  IDLE → CONNECTING → OPEN → CLOSED
Exactly one Closed event is emitted per link, whichever side closes first.
There is no reconnect: CLOSED is final.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_engine.config import StreamingConfig
from voice_engine.errors import MSG_CONNECTION_ERROR, ConnectError
from voice_engine.protocol import (
    Closed,
    LinkEvent,
    MalformedMessage,
    build_streaming_url,
    parse_message,
)

log = logging.getLogger("voice_engine.link")

ABNORMAL_CLOSE = 1006


class LinkState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TranscriptionLink:
    def __init__(
        self,
        config: StreamingConfig,
        on_event: Callable[[LinkEvent], None],
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._on_event = on_event
        self._clock = clock
        self.state = LinkState.IDLE
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._ws = None
        self._receiver: asyncio.Task | None = None
        self.frames_sent = 0
        self.messages_received = 0

    @property
    def is_open(self) -> bool:
        return self.state is LinkState.OPEN

    async def open(self, token: str) -> None:
        """Connect and start receiving.

        Raises ConnectError if the socket never opens.  If close() runs while
        the handshake is in flight the new socket is closed and the link
        stays CLOSED.
        """
        if self.state is not LinkState.IDLE:
            raise RuntimeError(f"link already used (state={self.state.value})")
        self.state = LinkState.CONNECTING
        url = build_streaming_url(self.config, token)
        log.info(
            "event=ws_connecting url=%s sentiment=%s speaker_labels=%s content_safety=%s",
            self.config.url, self.config.sentiment_analysis, self.config.speaker_labels, self.config.content_safety,
        )
        try:
            ws = await websockets.connect(url, open_timeout=self.config.open_timeout_sec)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            if self.state is not LinkState.CONNECTING:
                log.info("event=ws_connect_abandoned state=%s error=%s", self.state.value, exc)
                return
            self.state = LinkState.CLOSED
            self.close_code = ABNORMAL_CLOSE
            log.error("event=ws_connect_failed error=%s", exc)
            raise ConnectError(MSG_CONNECTION_ERROR) from exc

        if self.state is not LinkState.CONNECTING:
            # close() ran while the handshake was in flight; its Closed is already out.
            log.info("event=ws_connect_abandoned state=%s", self.state.value)
            await ws.close(code=1000, reason="normal")
            return
        self._ws = ws
        self.state = LinkState.OPEN
        self._receiver = asyncio.create_task(self._receive())
        log.info("event=ws_connected")

    async def send(self, frame: bytes) -> None:
        """Send one audio frame.  Dropped silently unless the link is OPEN."""
        if self.state is not LinkState.OPEN or self._ws is None:
            return
        try:
            await self._ws.send(frame)
        except ConnectionClosed:
            # The receiver reports the close; nothing to do here.
            log.debug("event=ws_send_dropped reason=closed")
            return
        self.frames_sent += 1

    async def _receive(self) -> None:
        ws = self._ws
        code, reason = ABNORMAL_CLOSE, ""
        try:
            async for message in ws:
                if self.state is not LinkState.OPEN:
                    return
                self.messages_received += 1
                try:
                    events = parse_message(message, now_ms=int(self._clock() * 1000))
                except MalformedMessage as exc:
                    log.warning("event=ws_message_malformed error=%s", exc)
                    continue
                for event in events:
                    self._on_event(event)
            if ws.close_code is not None:
                code, reason = ws.close_code, ws.close_reason or ""
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                code, reason = exc.rcvd.code, exc.rcvd.reason
        self._finish(code, reason)

    def _finish(self, code: int, reason: str) -> None:
        if self.state is LinkState.CLOSED:
            return
        self.state = LinkState.CLOSED
        self.close_code, self.close_reason = code, reason
        log.info(
            "event=ws_closed code=%d reason=%r frames_sent=%d messages=%d",
            code, reason, self.frames_sent, self.messages_received,
        )
        self._on_event(Closed(code=code, reason=reason))

    async def close(self) -> None:
        """Close locally.  Emits Closed(1000, "normal") unless already closed."""
        if self.state is LinkState.CLOSED:
            return
        if self.state is LinkState.IDLE:
            self.state = LinkState.CLOSED
            return
        self._finish(1000, "normal")

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=1000, reason="normal")
            except (OSError, WebSocketException) as exc:
                log.warning("event=ws_close_error error=%s", exc)

        receiver, self._receiver = self._receiver, None
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
