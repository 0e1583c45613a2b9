"""PCM conversion helpers shared by every audio source.

Hardware and file audio arrive as float samples at whatever rate the
device or file uses.  The streaming service wants 16 kHz mono signed
16-bit little-endian frames of a fixed size.
"""

from __future__ import annotations

from math import gcd

import numpy as np
import scipy.signal

PCM16_DTYPE = np.dtype("<i2")


def to_mono(samples: np.ndarray) -> np.ndarray:
    """Average interleaved channels down to one; 1-D input passes through."""
    if samples.ndim > 1:
        return np.mean(samples, axis=1)
    return samples


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Polyphase resample from src_rate to dst_rate."""
    if src_rate == dst_rate or len(samples) == 0:
        return samples
    g = gcd(int(src_rate), int(dst_rate))
    up, down = dst_rate // g, src_rate // g
    return scipy.signal.resample_poly(samples, up, down)


class StreamResampler:
    """Polyphase resampler for audio that arrives in blocks.

    The anti-alias filter's history carries over from one block to the
    next, so the output is the same however the input happens to be cut
    up.  Output lags the input by the filter's group delay (about ten
    output samples); nothing is shifted back the way resample_poly does.
    """

    def __init__(self, src_rate: int, dst_rate: int):
        g = gcd(int(src_rate), int(dst_rate))
        self.up, self.down = dst_rate // g, src_rate // g
        max_rate = max(self.up, self.down)
        # Same kaiser design resample_poly uses by default.
        self._taps = scipy.signal.firwin(20 * max_rate + 1, 1.0 / max_rate, window=("kaiser", 5.0)) * self.up
        self._buffer = np.zeros(0)
        self._start = 0     # input index of _buffer[0]; always a multiple of down
        self._next_out = 0  # output index of the next sample to return

    @property
    def passthrough(self) -> bool:
        return self.up == self.down

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self.passthrough:
            return samples
        self._buffer = np.concatenate([self._buffer, np.asarray(samples, dtype=np.float64)])
        total = self._start + len(self._buffer)
        # An output is final once every input its filter window covers has arrived.
        stop = -(-total * self.up // self.down)
        base = self._start * self.up // self.down
        filtered = scipy.signal.upfirdn(self._taps, self._buffer, self.up, self.down)
        out = filtered[self._next_out - base:stop - base]
        self._next_out = stop

        oldest = (self._next_out * self.down - (len(self._taps) - 1)) // self.up
        keep_from = max(oldest, 0) // self.down * self.down
        if keep_from > self._start:
            self._buffer = self._buffer[keep_from - self._start:]
            self._start = keep_from
        return out

    def reset(self) -> None:
        self._buffer = np.zeros(0)
        self._start = 0
        self._next_out = 0


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Clamp float audio to [-1, 1] and scale to signed 16-bit LE bytes.

    Negative samples scale by 0x8000, non-negative by 0x7FFF, and the
    result truncates toward zero, so -1.0 maps to -32768 and 1.0 to 32767.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return np.trunc(scaled).astype(PCM16_DTYPE).tobytes()


class FrameAssembler:
    """Re-chunks an arbitrary PCM16 byte stream into fixed-size frames."""

    def __init__(self, frame_samples: int):
        self.frame_bytes = frame_samples * PCM16_DTYPE.itemsize
        self._pending = bytearray()

    def push(self, pcm: bytes) -> list[bytes]:
        """Append pcm and return every whole frame now available."""
        self._pending.extend(pcm)
        frames = []
        while len(self._pending) >= self.frame_bytes:
            frames.append(bytes(self._pending[:self.frame_bytes]))
            del self._pending[:self.frame_bytes]
        return frames

    def flush(self) -> bytes | None:
        """Return the buffered tail zero-padded to a full frame, if any."""
        if not self._pending:
            return None
        tail = bytes(self._pending) + b"\x00" * (self.frame_bytes - len(self._pending))
        self._pending.clear()
        return tail

    def clear(self) -> None:
        self._pending.clear()
