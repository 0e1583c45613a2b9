import numpy as np
import pytest

from voice_engine.pcm import PCM16_DTYPE, FrameAssembler, StreamResampler, float_to_pcm16, resample, to_mono


def test_float_to_pcm16_scaling_and_clamp():
    pcm = float_to_pcm16(np.array([-1.0, -0.5, 0.0, 0.5, 1.0, 2.0, -2.0]))
    samples = np.frombuffer(pcm, dtype=PCM16_DTYPE).tolist()
    assert samples == [-32768, -16384, 0, 16383, 32767, 32767, -32768]


def test_float_to_pcm16_is_little_endian():
    assert float_to_pcm16(np.array([1.0])) == b"\xff\x7f"


def test_to_mono_averages_channels():
    stereo = np.array([[1.0, 3.0], [-1.0, 1.0]])
    assert to_mono(stereo).tolist() == [2.0, 0.0]
    mono = np.array([0.1, 0.2])
    assert to_mono(mono) is mono


def test_resample_length():
    assert len(resample(np.zeros(4800), 48000, 16000)) == 1600
    assert len(resample(np.zeros(441), 44100, 16000)) == 160
    same = np.zeros(10)
    assert resample(same, 16000, 16000) is same


def _sine(rate: int, seconds: float = 1.0, freq: float = 440.0) -> np.ndarray:
    t = np.arange(int(rate * seconds)) / rate
    return 0.5 * np.sin(2 * np.pi * freq * t)


class TestStreamResampler:
    @pytest.mark.parametrize("src", [48000, 44100, 8000])
    def test_block_size_does_not_change_output(self, src):
        signal = _sine(src)
        whole = StreamResampler(src, 16000).process(signal)

        streaming = StreamResampler(src, 16000)
        blocks = np.array_split(signal, range(1024, len(signal), 1024))
        chunked = np.concatenate([streaming.process(block) for block in blocks])

        assert len(whole) == len(chunked) == 16000
        np.testing.assert_allclose(chunked, whole, atol=1e-9)

    @pytest.mark.parametrize("src,delay", [(48000, 10), (44100, 10), (8000, 20)])
    def test_sine_survives_block_edges(self, src, delay):
        streaming = StreamResampler(src, 16000)
        signal = _sine(src)
        out = np.concatenate([streaming.process(block) for block in np.array_split(signal, range(512, len(signal), 512))])

        m = np.arange(100, 15900)
        expected = 0.5 * np.sin(2 * np.pi * 440.0 * (m - delay) / 16000)
        assert np.max(np.abs(out[m] - expected)) < 0.02

    def test_same_rate_passes_through(self):
        samples = np.ones(8)
        streaming = StreamResampler(16000, 16000)
        assert streaming.passthrough
        assert streaming.process(samples) is samples

    def test_reset_starts_a_fresh_stream(self):
        streaming = StreamResampler(48000, 16000)
        first = streaming.process(_sine(48000, 0.1))
        streaming.reset()
        assert np.array_equal(streaming.process(_sine(48000, 0.1)), first)


class TestFrameAssembler:
    def test_emits_only_whole_frames(self):
        assembler = FrameAssembler(frame_samples=4)
        assert assembler.push(b"\x01" * 6) == []
        frames = assembler.push(b"\x02" * 4)
        assert frames == [b"\x01" * 6 + b"\x02" * 2]
        assert assembler.flush() == b"\x02" * 2 + b"\x00" * 6
        assert assembler.flush() is None

    def test_several_frames_in_one_push(self):
        assembler = FrameAssembler(frame_samples=2)
        assert len(assembler.push(bytes(20))) == 5

    def test_clear_drops_pending(self):
        assembler = FrameAssembler(frame_samples=4)
        assembler.push(b"\x01" * 3)
        assembler.clear()
        assert assembler.flush() is None
