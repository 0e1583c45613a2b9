"""Replay a WAV file as if it were a live microphone.

Same conversion path as the microphone (mono → 16 kHz → PCM16 frames),
paced at real time so the recognizer sees natural timing.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator

import numpy as np
import soundfile as sf

from voice_engine.config import TARGET_SAMPLE_RATE, AudioConfig
from voice_engine.errors import DeviceError, DeviceErrorReason
from voice_engine.pcm import FrameAssembler, float_to_pcm16, resample, to_mono

log = logging.getLogger("voice_engine.wav_source")


class WavFileSource:
    def __init__(self, path: str | Path, config: AudioConfig, realtime: bool = True, tail_silence_sec: float = 1.0):
        self.path = Path(path)
        self.config = config
        self.realtime = realtime
        self.tail_silence_sec = tail_silence_sec
        self._frames: list[bytes] = []
        self._running = False
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        try:
            data, sr = sf.read(str(self.path), dtype="float32", always_2d=False)
        except Exception as exc:
            log.error("event=wav_open_failed path=%s error=%s", self.path, exc)
            raise DeviceError(DeviceErrorReason.NOT_FOUND, str(exc)) from exc

        samples = resample(to_mono(np.asarray(data)), int(sr), TARGET_SAMPLE_RATE)
        if self.tail_silence_sec > 0:
            # Trailing silence lets the recognizer finalize the last words.
            samples = np.concatenate([samples, np.zeros(int(TARGET_SAMPLE_RATE * self.tail_silence_sec))])

        assembler = FrameAssembler(self.config.frame_samples)
        self._frames = assembler.push(float_to_pcm16(samples))
        tail = assembler.flush()
        if tail is not None:
            self._frames.append(tail)

        self._running = True
        self._stopped = False
        log.info(
            "event=wav_started path=%s source_rate=%d frames=%d duration_sec=%.2f",
            self.path, sr, len(self._frames), len(samples) / TARGET_SAMPLE_RATE,
        )

    async def frames(self) -> AsyncIterator[bytes]:
        frame_sec = self.config.frame_samples / TARGET_SAMPLE_RATE
        for frame in self._frames:
            if not self._running:
                return
            yield frame
            if self.realtime:
                await asyncio.sleep(frame_sec)
        log.info("event=wav_finished path=%s", self.path)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        self._frames = []
