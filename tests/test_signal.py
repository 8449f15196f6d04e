"""
Signal processing tests.
"""

import math
import struct

import numpy as np
import pytest

from conftest import make_buffer, sine
from voiceclone.core.errors import EncodingError
from voiceclone.services.signal import (
    AudioBufferDescriptor,
    analyze_quality,
    calculate_quality_score,
    downmix_to_mono,
    encode_wav,
    high_pass_filter,
    normalize,
    resample,
    wav_header,
)


class TestAudioBufferDescriptor:
    """Buffer validation tests."""

    def test_rejects_mismatched_channels(self):
        with pytest.raises(EncodingError):
            AudioBufferDescriptor(44100, (np.zeros(10), np.zeros(11)))

    def test_rejects_no_channels(self):
        with pytest.raises(EncodingError):
            AudioBufferDescriptor(44100, ())

    def test_rejects_bad_sample_rate(self):
        with pytest.raises(EncodingError):
            AudioBufferDescriptor(0, (np.zeros(10),))

    def test_copies_and_freezes_input(self):
        source = np.ones(4, dtype=np.float32)
        buffer = AudioBufferDescriptor(8000, (source,))
        source[0] = 0.0

        assert buffer.channel_data[0][0] == 1.0
        with pytest.raises(ValueError):
            buffer.channel_data[0][0] = 0.5

    def test_from_array_frames_by_channels(self):
        samples = np.zeros((100, 2), dtype=np.float32)
        samples[:, 1] = 0.25
        buffer = AudioBufferDescriptor.from_array(samples, 22050)

        assert buffer.channels == 2
        assert buffer.frame_count == 100
        assert buffer.channel_data[1][0] == pytest.approx(0.25)


class TestDownmix:

    def test_mono_passthrough(self):
        buffer = make_buffer(channels=1)
        assert np.array_equal(downmix_to_mono(buffer), buffer.channel_data[0])

    def test_averages_channels(self):
        buffer = AudioBufferDescriptor(
            8000,
            (np.array([1.0, 0.5, -1.0]), np.array([0.0, 0.5, 1.0])),
        )
        assert downmix_to_mono(buffer).tolist() == [0.5, 0.5, 0.0]


class TestResample:

    @pytest.mark.parametrize("rate", [8000, 16000, 44100, 48000])
    def test_same_rate_unchanged(self, rate):
        samples = sine(rate, 0.1)
        assert resample(samples, rate, rate) is samples

    def test_output_length(self):
        samples = np.zeros(16000, dtype=np.float32)
        # floor(16000 / (16000 / 44100))
        assert len(resample(samples, 16000, 44100)) in (44099, 44100)
        assert len(resample(samples, 16000, 8000)) == 8000

    def test_linear_interpolation(self):
        samples = np.array([0.0, 1.0, 0.0, -1.0], dtype=np.float32)
        out = resample(samples, 1, 2)

        assert out.tolist() == [0.0, 0.5, 1.0, 0.5, 0.0, -0.5, -1.0, -1.0]

    def test_empty_input(self):
        assert len(resample(np.zeros(0, dtype=np.float32), 8000, 44100)) == 0


class TestNormalize:

    def test_peak_scaled_to_target(self):
        samples = sine(44100, 0.5, amplitude=0.2)
        normalize(samples)
        assert float(np.max(np.abs(samples))) <= 0.707 + 1e-6
        assert float(np.max(np.abs(samples))) == pytest.approx(0.707, abs=1e-6)

    def test_silence_untouched(self):
        samples = np.zeros(100, dtype=np.float32)
        normalize(samples)
        assert not samples.any()

    def test_loud_input_attenuated(self):
        samples = np.array([2.0, -4.0, 1.0], dtype=np.float32)
        normalize(samples)
        assert float(np.max(np.abs(samples))) == pytest.approx(0.707, abs=1e-6)


class TestHighPassFilter:

    def test_removes_dc_offset(self):
        samples = np.full(44100, 0.5, dtype=np.float32)
        high_pass_filter(samples, 44100, 80.0)

        assert samples[0] == pytest.approx(0.5 * (1 / (80.0 * 2 * np.pi)) / ((1 / (80.0 * 2 * np.pi)) + 1 / 44100), rel=1e-6)
        assert abs(float(samples[-1])) < 1e-3

    def test_passes_speech_band(self):
        samples = sine(44100, 1.0, freq=1000.0, amplitude=0.5)
        high_pass_filter(samples, 44100, 80.0)
        tail = samples[4410:]
        assert float(np.max(np.abs(tail))) > 0.45

    def test_state_reset_per_call(self):
        first = np.full(10, 0.5, dtype=np.float32)
        second = np.full(10, 0.5, dtype=np.float32)
        high_pass_filter(first, 44100)
        high_pass_filter(second, 44100)
        assert np.array_equal(first, second)


class TestWavEncoding:

    def test_header_fields(self):
        header = wav_header(100, 44100)
        fields = struct.unpack("<4sI4s4sIHHIIHH4sI", header)

        assert len(header) == 44
        assert fields[0] == b"RIFF"
        assert fields[1] == 36 + 200
        assert fields[2] == b"WAVE"
        assert fields[5:9] == (1, 1, 44100, 88200)
        assert fields[9:11] == (2, 16)
        assert fields[12] == 200

    def test_samples_clamped_and_truncated(self):
        data = encode_wav(np.array([0.0, 1.0, -1.0, 2.0, -2.0, 0.5, -0.5], dtype=np.float32), 8000)
        pcm = np.frombuffer(data[44:], dtype="<i2").tolist()

        # 0.5 * 32767 = 16383.5 truncates toward zero
        assert pcm == [0, 32767, -32767, 32767, -32767, 16383, -16383]

    def test_non_finite_rejected(self):
        with pytest.raises(EncodingError):
            encode_wav(np.array([0.0, np.nan], dtype=np.float32), 8000)

    def test_multichannel_rejected(self):
        with pytest.raises(EncodingError):
            encode_wav(np.zeros((2, 10), dtype=np.float32), 8000)


class TestQualityScore:
    """Every scoring boundary, one dimension at a time."""

    BASE = dict(duration=60.0, rms=0.1, peak=0.5, sample_rate=44100)

    def score(self, **overrides):
        values = dict(self.BASE)
        values.update(overrides)
        return calculate_quality_score(**values)

    def test_perfect(self):
        assert self.score() == 100

    @pytest.mark.parametrize("duration,expected", [
        (4.999, 70),
        (5.0, 85),
        (9.999, 85),
        (10.0, 100),
        (1800.0, 100),
        (1800.001, 80),
    ])
    def test_duration_boundaries(self, duration, expected):
        assert self.score(duration=duration) == expected

    @pytest.mark.parametrize("rms,expected", [
        (0.0, 60),
        (0.00999, 60),
        (0.01, 80),
        (0.04999, 80),
        (0.05, 100),
        (0.5, 100),
        (0.50001, 90),
    ])
    def test_rms_boundaries(self, rms, expected):
        assert self.score(rms=rms) == expected

    @pytest.mark.parametrize("peak,expected", [
        (0.95, 100),
        (0.95001, 70),
        (1.0, 70),
    ])
    def test_peak_boundaries(self, peak, expected):
        assert self.score(peak=peak) == expected

    @pytest.mark.parametrize("sample_rate,expected", [
        (8000, 75),
        (22049, 75),
        (22050, 90),
        (44099, 90),
        (44100, 100),
        (48000, 100),
    ])
    def test_sample_rate_boundaries(self, sample_rate, expected):
        assert self.score(sample_rate=sample_rate) == expected

    def test_clamped_at_zero(self):
        assert calculate_quality_score(duration=1.0, rms=0.0, peak=1.0, sample_rate=8000) == 0


class TestAnalyzeQuality:

    def test_quiet_short_low_rate_scores_five(self):
        samples = np.full(3 * 16000, 0.005, dtype=np.float32)
        report = analyze_quality(AudioBufferDescriptor(16000, (samples,)))

        assert report.duration == pytest.approx(3.0)
        assert report.rms == pytest.approx(0.005, rel=1e-6)
        assert report.score == 5
        assert report.is_silent
        assert not report.is_clipped
        assert "Recording too short" in report.issues
        assert "Audio is too quiet" in report.issues

    def test_clipping_detected(self):
        samples = np.full(44100 * 12, 0.99, dtype=np.float32)
        report = analyze_quality(AudioBufferDescriptor(44100, (samples,)))

        assert report.is_clipped
        assert report.peak == pytest.approx(0.99, rel=1e-6)
        # rms 0.99 > 0.5 and peak > 0.95
        assert report.score == 60
        assert "Audio is clipping" in report.issues

    def test_uses_first_channel(self):
        loud = np.full(44100 * 12, 0.2, dtype=np.float32)
        silent = np.zeros(44100 * 12, dtype=np.float32)
        report = analyze_quality(AudioBufferDescriptor(44100, (loud, silent)))

        assert report.channels == 2
        assert report.rms == pytest.approx(0.2, rel=1e-6)
        assert report.score == 100

    def test_rms_sums_squares_in_order(self):
        rng = np.random.default_rng(7)
        samples = (rng.standard_normal(20000) * 0.05).astype(np.float32)

        total = 0.0
        for value in samples.tolist():
            total += value * value

        report = analyze_quality(AudioBufferDescriptor(16000, (samples,)))
        assert report.rms == math.sqrt(total / len(samples))

    def test_empty_buffer(self):
        report = analyze_quality(AudioBufferDescriptor(44100, (np.zeros(0),)))
        assert report.rms == 0.0
        assert report.peak == 0.0
        assert report.duration == 0.0

    def test_report_round_trip(self):
        report = analyze_quality(make_buffer(seconds=6.0))
        assert type(report).from_dict(report.to_dict()) == report
