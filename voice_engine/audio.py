"""Microphone capture → fixed-size 16 kHz PCM16 frames.

The sounddevice callback runs on PortAudio's audio thread.  It converts
each block and hands finished frames to the event loop with
call_soon_threadsafe; nothing else crosses the thread boundary.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import numpy as np
import sounddevice as sd

from voice_engine.config import TARGET_CHANNELS, TARGET_SAMPLE_RATE, AudioConfig
from voice_engine.errors import DeviceError, classify_device_error
from voice_engine.pcm import FrameAssembler, StreamResampler, float_to_pcm16, to_mono

log = logging.getLogger("voice_engine.audio")


class AudioSource:
    """Exclusive owner of one microphone InputStream for a session."""

    def __init__(self, config: AudioConfig):
        self.config = config
        self._stream: sd.InputStream | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._assembler = FrameAssembler(config.frame_samples)
        self._native_rate: int = TARGET_SAMPLE_RATE
        self._resampler = StreamResampler(TARGET_SAMPLE_RATE, TARGET_SAMPLE_RATE)
        self._running = False
        self._stopped = False
        self.frames_emitted = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def _resolve_native_rate(self) -> int:
        if self.config.native_sample_rate:
            return self.config.native_sample_rate
        # Let PortAudio convert when it can; otherwise capture at the device default.
        try:
            sd.check_input_settings(
                device=self.config.device, samplerate=TARGET_SAMPLE_RATE,
                channels=TARGET_CHANNELS, dtype="float32",
            )
            return TARGET_SAMPLE_RATE
        except (sd.PortAudioError, ValueError) as exc:
            log.info("event=mic_target_rate_unsupported rate=%d error=%s", TARGET_SAMPLE_RATE, exc)
        info = sd.query_devices(self.config.device, "input")
        return int(info["default_samplerate"])

    def start(self) -> None:
        """Open and start the input stream.  Raises DeviceError on failure."""
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._stopped = False
        try:
            self._native_rate = self._resolve_native_rate()
            self._resampler = StreamResampler(self._native_rate, TARGET_SAMPLE_RATE)
            self._stream = sd.InputStream(
                device=self.config.device,
                samplerate=self._native_rate,
                channels=TARGET_CHANNELS,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
        except Exception as exc:
            reason = classify_device_error(exc)
            log.error("event=mic_start_failed reason=%s error=%s", reason.value, exc)
            self._release_stream()
            raise DeviceError(reason, str(exc)) from exc

        self._running = True
        log.info(
            "event=mic_started device=%s native_rate=%d target_rate=%d frame_samples=%d",
            self.config.device, self._native_rate, TARGET_SAMPLE_RATE, self.config.frame_samples,
        )

    # -- sounddevice audio-thread callback --

    def _callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if not self._running or self._loop is None:
            return
        mono = to_mono(indata)
        pcm = float_to_pcm16(self._resampler.process(mono))
        for frame in self._assembler.push(pcm):
            try:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)
            except RuntimeError:
                # Loop already closed during teardown.
                return

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield frames until stop() is called."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            self.frames_emitted += 1
            yield frame

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()

    def stop(self) -> None:
        """Release the device.  Safe to call repeatedly or before start()."""
        if self._stopped:
            return
        self._stopped = True
        was_running = self._running
        self._running = False
        try:
            self._release_stream()
        except Exception as exc:
            log.warning("event=mic_release_error error=%s", exc)
        self._assembler.clear()
        self._resampler.reset()
        self._queue.put_nowait(None)
        if was_running:
            log.info("event=mic_stopped frames_emitted=%d", self.frames_emitted)

