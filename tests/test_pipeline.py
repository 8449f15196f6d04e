"""
Audio pipeline and worker tests.
"""

import asyncio
import struct

import numpy as np
import pytest

from conftest import make_buffer
from voiceclone.core.errors import AudioProcessingError, EmptyInputError, capture
from voiceclone.core.logging import current_log_context, log_context
from voiceclone.services import pipeline
from voiceclone.services.pipeline import (
    AudioWorker,
    ProcessingContext,
    WorkerOp,
    combine,
)
from voiceclone.services.recordings import decode_audio
from voiceclone.services.signal import AudioBufferDescriptor


def riff_size(data: bytes) -> int:
    return struct.unpack_from("<I", data, 4)[0]


class TestCombine:

    @pytest.mark.parametrize("frames", [1, 1000, 44100])
    def test_single_44k_buffer_keeps_length(self, frames):
        samples = np.linspace(-0.5, 0.5, frames, dtype=np.float32)
        asset = combine([AudioBufferDescriptor(44100, (samples,))])

        assert asset.frame_count == frames
        assert riff_size(asset.data) == 36 + frames * 2
        assert len(asset.data) == 44 + frames * 2

    def test_empty_input(self):
        with pytest.raises(EmptyInputError):
            combine([])

    def test_mixed_rates_sum_durations(self):
        buffers = [
            make_buffer(16000, 2.0),
            make_buffer(44100, 3.0),
            make_buffer(8000, 1.0),
        ]
        asset = combine(buffers)

        assert asset.sample_rate == 44100
        assert asset.channels == 1
        assert abs(asset.frame_count - 6 * 44100) <= 2
        assert asset.duration_seconds == pytest.approx(6.0, abs=3 / 44100)

        decoded = decode_audio(asset.data)
        assert decoded.sample_rate == 44100
        assert decoded.channels == 1
        assert decoded.frame_count == asset.frame_count

    def test_stereo_is_downmixed(self):
        asset = combine([make_buffer(44100, 0.5, channels=2)])
        assert asset.frame_count == 22050
        assert struct.unpack_from("<H", asset.data, 22)[0] == 1

    def test_normalized_over_whole_signal(self):
        quiet = make_buffer(44100, 0.5, amplitude=0.1)
        loud = make_buffer(44100, 0.5, amplitude=0.4)
        asset = combine([quiet, loud])

        pcm = np.frombuffer(asset.data[44:], dtype="<i2").astype(np.float64) / 32767
        first, second = pcm[:22050], pcm[22050:]
        # one gain for both segments keeps their 1:4 level ratio
        assert np.max(np.abs(second[2000:])) / np.max(np.abs(first[2000:])) == pytest.approx(4.0, rel=0.02)
        assert np.max(np.abs(pcm)) <= 0.707 + 1e-3

    def test_deterministic(self):
        buffers = [make_buffer(22050, 1.0), make_buffer(48000, 0.5, channels=2)]
        assert combine(buffers).data == combine(buffers).data

    def test_custom_context(self):
        context = ProcessingContext(sample_rate=16000)
        asset = combine([make_buffer(16000, 1.0)], context)
        assert asset.sample_rate == 16000
        assert asset.frame_count == 16000


class TestAudioWorker:

    async def test_combine(self, worker):
        asset = await worker.combine([make_buffer(16000, 1.0), make_buffer(44100, 1.0)])
        assert abs(asset.frame_count - 2 * 44100) <= 1

    async def test_analyze(self, worker):
        report = await worker.analyze(make_buffer(44100, 12.0, amplitude=0.3))
        assert report.score == 100

    async def test_errors_propagate_as_rejections(self, worker):
        with pytest.raises(EmptyInputError):
            await worker.combine([])

    async def test_concurrent_requests_are_correlated(self, worker):
        short = make_buffer(44100, 0.1)
        long = make_buffer(44100, 0.3)
        results = await asyncio.gather(
            worker.combine([long]),
            worker.combine([short]),
            worker.combine([short, long]),
        )
        assert [r.frame_count for r in results] == [13230, 4410, 17640]
        assert worker.pending_count == 0

    async def test_unknown_failure_wrapped(self, worker, monkeypatch):
        def explode(*args, **kwargs):
            raise ValueError("boom")

        monkeypatch.setattr("voiceclone.services.pipeline.analyze_quality", explode)

        with pytest.raises(AudioProcessingError, match="Audio analysis failed: boom"):
            await worker.analyze(make_buffer())

    async def test_worker_thread_sees_caller_log_context(self, worker, monkeypatch):
        seen = []
        real_analyze = pipeline.analyze_quality

        def recording_analyze(buffer):
            seen.append(current_log_context())
            return real_analyze(buffer)

        monkeypatch.setattr(pipeline, "analyze_quality", recording_analyze)
        with log_context(job_id="job-7", attempt=3):
            await worker.submit(WorkerOp.ANALYZE, {"buffer": make_buffer()}, request_id="req-1")

        assert seen == [{"job_id": "job-7", "attempt": 3, "request_id": "req-1"}]
        assert current_log_context() == {}

    async def test_timeout(self, monkeypatch):
        audio_worker = AudioWorker(timeout=0.05)
        await audio_worker.initialize()

        def slow(*args, **kwargs):
            import time
            time.sleep(0.3)

        monkeypatch.setattr("voiceclone.services.pipeline.analyze_quality", slow)
        try:
            with pytest.raises(AudioProcessingError, match="Worker request timeout"):
                await audio_worker.submit(WorkerOp.ANALYZE, {"buffer": make_buffer()})
        finally:
            await audio_worker.shutdown()

    async def test_requires_initialize(self):
        with pytest.raises(AudioProcessingError):
            await AudioWorker().combine([make_buffer()])

    async def test_capture_wraps_errors(self, worker):
        result = await capture(worker.combine([]))
        assert not result.ok
        assert result.error_code == "EMPTY_INPUT"
        assert result.to_dict()["error"]["message"] == "No audio buffers to combine"

        result = await capture(worker.combine([make_buffer(44100, 0.1)]))
        assert result.ok
        assert result.value.frame_count == 4410
