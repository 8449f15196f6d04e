"""
Pure audio transforms used to build voice clone training assets.

Samples are stored as float32 and every computation is carried out in
float64 before being stored back, which keeps the output bit-for-bit
identical to assets produced for existing voice profiles. None of these
functions hold state between calls.
"""

import math
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np

from voiceclone.core.errors import EncodingError

TARGET_SAMPLE_RATE = 44100
TARGET_PEAK = 0.707  # about -3dB
HIGH_PASS_CUTOFF_HZ = 80.0
PCM_SCALE = 0x7FFF
WAV_HEADER_SIZE = 44

SILENCE_RMS = 0.01
CLIPPING_PEAK = 0.95


@dataclass(frozen=True)
class AudioBufferDescriptor:
    """One captured recording, channel-major float32 samples in [-1, 1]."""

    sample_rate: int
    channel_data: Sequence[np.ndarray]

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise EncodingError(
                "Sample rate must be positive",
                details={"sample_rate": self.sample_rate},
            )
        if len(self.channel_data) == 0:
            raise EncodingError("Audio buffer has no channels")

        channels = []
        for data in self.channel_data:
            array = np.array(data, dtype=np.float32, copy=True)
            if array.ndim != 1:
                raise EncodingError(
                    "Channel data must be one-dimensional",
                    details={"shape": list(array.shape)},
                )
            array.setflags(write=False)
            channels.append(array)

        lengths = {len(c) for c in channels}
        if len(lengths) != 1:
            raise EncodingError(
                "All channels must have the same length",
                details={"lengths": sorted(lengths)},
            )
        object.__setattr__(self, "channel_data", tuple(channels))

    @classmethod
    def from_array(cls, samples: np.ndarray, sample_rate: int) -> "AudioBufferDescriptor":
        """Build a buffer from a (frames,) or (frames, channels) array, as soundfile returns."""
        array = np.asarray(samples, dtype=np.float32)
        if array.ndim == 1:
            return cls(sample_rate=sample_rate, channel_data=(array,))
        if array.ndim != 2:
            raise EncodingError(
                "Expected a (frames, channels) array",
                details={"shape": list(array.shape)},
            )
        return cls(
            sample_rate=sample_rate,
            channel_data=tuple(array[:, c] for c in range(array.shape[1])),
        )

    @property
    def channels(self) -> int:
        return len(self.channel_data)

    @property
    def frame_count(self) -> int:
        return len(self.channel_data[0])

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate


@dataclass(frozen=True)
class CombinedAsset:
    """Mono 16-bit PCM WAV bytes ready to upload for training."""

    data: bytes
    frame_count: int
    sample_rate: int = TARGET_SAMPLE_RATE
    channels: int = 1

    @property
    def duration_seconds(self) -> float:
        return self.frame_count / self.sample_rate

    @property
    def byte_length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class QualityReport:
    """Derived loudness/duration metrics and a 0-100 score for one recording."""

    duration: float
    sample_rate: int
    channels: int
    rms: float
    peak: float
    is_silent: bool
    is_clipped: bool
    score: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "rms": self.rms,
            "peak": self.peak,
            "is_silent": self.is_silent,
            "is_clipped": self.is_clipped,
            "score": self.score,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityReport":
        return cls(
            duration=float(data["duration"]),
            sample_rate=int(data["sample_rate"]),
            channels=int(data["channels"]),
            rms=float(data["rms"]),
            peak=float(data["peak"]),
            is_silent=bool(data["is_silent"]),
            is_clipped=bool(data["is_clipped"]),
            score=int(data["score"]),
            issues=list(data.get("issues", [])),
            recommendations=list(data.get("recommendations", [])),
        )


def downmix_to_mono(buffer: AudioBufferDescriptor) -> np.ndarray:
    """Average the channels of each frame. Mono input is returned as-is (read-only)."""
    if buffer.channels == 1:
        return buffer.channel_data[0]

    total = np.zeros(buffer.frame_count, dtype=np.float64)
    for channel in buffer.channel_data:
        total += channel.astype(np.float64)
    return (total / buffer.channels).astype(np.float32)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Linear-interpolation resampler.

    Not band-limited: fine for training input, not for playback. The
    index/fraction arithmetic must not change, existing profiles were
    trained on its exact output.
    """
    if source_rate == target_rate:
        return samples

    length = len(samples)
    ratio = source_rate / target_rate
    output_length = math.floor(length / ratio)
    if output_length <= 0 or length == 0:
        return np.zeros(0, dtype=np.float32)

    source = np.asarray(samples, dtype=np.float32).astype(np.float64)
    positions = np.arange(output_length, dtype=np.float64) * ratio
    index = np.minimum(np.floor(positions).astype(np.int64), length - 1)
    fraction = positions - index

    has_next = index + 1 < length
    next_index = np.where(has_next, index + 1, index)
    interpolated = source[index] * (1 - fraction) + source[next_index] * fraction
    output = np.where(has_next, interpolated, source[index])
    return output.astype(np.float32)


def normalize(samples: np.ndarray, target_peak: float = TARGET_PEAK) -> np.ndarray:
    """Scale in place so the absolute peak equals target_peak. Silence is left alone."""
    if len(samples) == 0:
        return samples

    peak = float(np.max(np.abs(samples)))
    if peak == 0:
        return samples

    gain = target_peak / peak
    samples[:] = (samples.astype(np.float64) * gain).astype(np.float32)
    return samples


def high_pass_filter(
    samples: np.ndarray,
    sample_rate: int,
    cutoff_hz: float = HIGH_PASS_CUTOFF_HZ,
) -> np.ndarray:
    """
    Single-pole IIR high-pass filter, applied in place.

    Filter state starts at zero on every call. The recurrence is evaluated
    sample by sample in float64 so rounding matches the reference output.
    """
    rc = 1.0 / (cutoff_hz * 2 * math.pi)
    dt = 1.0 / sample_rate
    alpha = rc / (rc + dt)

    previous_input = 0.0
    previous_output = 0.0
    filtered = [0.0] * len(samples)

    for i, current_input in enumerate(samples.tolist()):
        current_output = alpha * (previous_output + current_input - previous_input)
        filtered[i] = current_output
        previous_input = current_input
        previous_output = current_output

    samples[:] = np.asarray(filtered, dtype=np.float64).astype(np.float32)
    return samples


def wav_header(frame_count: int, sample_rate: int) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for mono 16-bit PCM."""
    data_size = frame_count * 2
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,  # PCM
        1,  # mono
        sample_rate,
        sample_rate * 2,  # byte rate
        2,  # block align
        16,  # bits per sample
        b"data",
        data_size,
    )


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode mono float samples as a 16-bit PCM WAV byte string."""
    array = np.asarray(samples, dtype=np.float32)
    if array.ndim != 1:
        raise EncodingError(
            "Only mono samples can be encoded",
            details={"shape": list(array.shape)},
        )
    if sample_rate <= 0:
        raise EncodingError("Sample rate must be positive", details={"sample_rate": sample_rate})
    if not np.all(np.isfinite(array)):
        raise EncodingError("Audio buffer contains non-finite samples")

    clamped = np.clip(array.astype(np.float64), -1.0, 1.0)
    # setInt16 semantics: scale then truncate toward zero
    pcm = np.trunc(clamped * PCM_SCALE).astype("<i2")
    return wav_header(len(array), sample_rate) + pcm.tobytes()


def calculate_quality_score(
    duration: float,
    rms: float,
    peak: float,
    sample_rate: int,
) -> int:
    """Additive penalty score clamped to [0, 100]."""
    score = 100

    if duration < 5:
        score -= 30
    elif duration < 10:
        score -= 15
    elif duration > 1800:
        score -= 20

    if rms < 0.01:
        score -= 40
    elif rms < 0.05:
        score -= 20
    elif rms > 0.5:
        score -= 10

    if peak > 0.95:
        score -= 30

    if sample_rate < 22050:
        score -= 25
    elif sample_rate < 44100:
        score -= 10

    return max(0, min(100, score))


def _describe_quality(duration: float, rms: float, peak: float, sample_rate: int):
    issues: List[str] = []
    recommendations: List[str] = []

    if duration < 5:
        issues.append("Recording too short")
        recommendations.append("Record for at least 5 seconds")
    elif duration > 1800:
        issues.append("Recording too long")
        recommendations.append("Keep recordings under 30 minutes")

    if rms < SILENCE_RMS:
        issues.append("Audio is too quiet")
        recommendations.append("Speak louder and closer to the microphone")
    elif rms < 0.05:
        issues.append("Low audio level")
        recommendations.append("Speak louder or move closer to microphone")

    if peak > CLIPPING_PEAK:
        issues.append("Audio is clipping")
        recommendations.append("Move further from microphone or speak softer")

    if sample_rate < 22050:
        issues.append("Low audio quality")
        recommendations.append("Check microphone settings")

    return issues, recommendations


def analyze_quality(buffer: AudioBufferDescriptor) -> QualityReport:
    """Measure RMS and peak over channel 0 and score the recording."""
    channel = buffer.channel_data[0].astype(np.float64)
    duration = buffer.duration

    if len(channel):
        # cumsum adds strictly left to right; np.sum pairs terms and can round differently
        sum_squares = float(np.cumsum(channel * channel)[-1])
        rms = math.sqrt(sum_squares / len(channel))
        peak = float(np.max(np.abs(channel)))
    else:
        rms = 0.0
        peak = 0.0

    issues, recommendations = _describe_quality(duration, rms, peak, buffer.sample_rate)

    return QualityReport(
        duration=duration,
        sample_rate=buffer.sample_rate,
        channels=buffer.channels,
        rms=rms,
        peak=peak,
        is_silent=rms < SILENCE_RMS,
        is_clipped=peak > CLIPPING_PEAK,
        score=calculate_quality_score(duration, rms, peak, buffer.sample_rate),
        issues=issues,
        recommendations=recommendations,
    )
