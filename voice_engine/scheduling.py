"""Timers that fire inside a session's serialized decision loop.

The turn-taking engine never touches the event loop directly.  It asks a
scheduler for ``call_later(delay, fn)`` and reads ``time()``; the loop
scheduler turns each expiry into an item on the session queue, so timer
callbacks are processed one at a time alongside transcript events.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

log = logging.getLogger("voice_engine.scheduling")


class Timer:
    """Handle for one pending callback."""

    def __init__(self, handle: Optional[asyncio.TimerHandle] = None):
        self._handle = handle
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, fn: Callable[[], None]) -> Timer: ...


class LoopScheduler:
    """Schedules on the running loop, delivers expiries through ``post``.

    ``post`` enqueues a zero-argument callable onto the session's event
    queue.  An expiry that was already queued when its timer got cancelled
    is dropped when the loop reaches it.
    """

    def __init__(self, post: Callable[[Callable[[], None]], None], loop: Optional[asyncio.AbstractEventLoop] = None):
        self._post = post
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, fn: Callable[[], None]) -> Timer:
        timer = Timer()

        def _run() -> None:
            if timer.cancelled:
                log.debug("event=timer_stale_skipped")
                return
            timer.fired = True
            fn()

        timer._handle = self.loop.call_later(max(delay, 0.0), self._post, _run)
        return timer
