"""
Audio pipeline executor.

Combines captured recordings into a single training asset. The CPU-bound
work runs on a dedicated worker thread; callers talk to it by posting typed
request messages with a correlation id and awaiting the matching response,
so nothing on the event loop blocks while audio is being processed.
"""

import asyncio
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from voiceclone.core.errors import (
    AudioProcessingError,
    EmptyInputError,
    VoiceCloneError,
)
from voiceclone.core.logging import current_log_context, get_logger, log_context, log_execution_time
from voiceclone.core.metrics import get_metrics
from voiceclone.services.signal import (
    HIGH_PASS_CUTOFF_HZ,
    TARGET_PEAK,
    TARGET_SAMPLE_RATE,
    AudioBufferDescriptor,
    CombinedAsset,
    QualityReport,
    analyze_quality,
    downmix_to_mono,
    encode_wav,
    high_pass_filter,
    normalize,
    resample,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessingContext:
    """Processing parameters, built once per worker and passed by reference."""

    sample_rate: int = TARGET_SAMPLE_RATE
    high_pass_cutoff_hz: float = HIGH_PASS_CUTOFF_HZ
    target_peak: float = TARGET_PEAK


def combine(
    buffers: Sequence[AudioBufferDescriptor],
    context: Optional[ProcessingContext] = None,
) -> CombinedAsset:
    """
    Mix, resample and concatenate recordings into one mono WAV asset.

    Each recording is down-mixed and resampled on its own, in input order.
    Normalization and the high-pass filter then run once over the whole
    concatenated signal; running them per segment gives different samples.
    """
    context = context or ProcessingContext()
    if not buffers:
        raise EmptyInputError()

    segments = [
        resample(downmix_to_mono(buffer), buffer.sample_rate, context.sample_rate)
        for buffer in buffers
    ]

    if len(segments) == 1:
        combined = np.array(segments[0], dtype=np.float32, copy=True)
    else:
        combined = np.zeros(sum(len(s) for s in segments), dtype=np.float32)
        offset = 0
        for segment in segments:
            combined[offset:offset + len(segment)] = segment
            offset += len(segment)

    normalize(combined, context.target_peak)
    high_pass_filter(combined, context.sample_rate, context.high_pass_cutoff_hz)

    return CombinedAsset(
        data=encode_wav(combined, context.sample_rate),
        frame_count=len(combined),
        sample_rate=context.sample_rate,
    )


class WorkerOp(str, Enum):
    COMBINE = "combine"
    ANALYZE = "analyze"


@dataclass(frozen=True)
class WorkerRequest:
    op: WorkerOp
    request_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    log_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerResponse:
    request_id: str
    ok: bool
    result: Any = None
    error: Optional[Exception] = None


_STOP = object()


class AudioWorker:
    """
    Dedicated audio processing thread with request/response correlation.

    Usage:
        worker = AudioWorker(ProcessingContext())
        await worker.initialize()
        asset = await worker.combine(buffers)
        await worker.shutdown()
    """

    def __init__(
        self,
        context: Optional[ProcessingContext] = None,
        timeout: float = 30.0,
    ):
        self.context = context or ProcessingContext()
        self.timeout = timeout
        self._requests: "queue.Queue[Any]" = queue.Queue()
        self._pending: Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = {}
        self._thread: Optional[threading.Thread] = None
        self._metrics = get_metrics()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def initialize(self) -> None:
        """Start the worker thread."""
        if self.is_running:
            return

        self._thread = threading.Thread(
            target=self._run,
            name="voiceclone-audio",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Audio worker started",
            extra={
                "sample_rate": self.context.sample_rate,
                "cutoff_hz": self.context.high_pass_cutoff_hz,
            },
        )

    async def shutdown(self) -> None:
        """Stop the worker thread and reject anything still waiting."""
        if self._thread is None:
            return

        self._requests.put(_STOP)
        await asyncio.to_thread(self._thread.join, self.timeout)
        self._thread = None

        for request_id, (_, future) in list(self._pending.items()):
            if not future.done():
                future.set_exception(AudioProcessingError("Audio worker stopped"))
            self._pending.pop(request_id, None)
        self._metrics.set_audio_pending(0)
        logger.info("Audio worker stopped")

    @log_execution_time(logger, "audio.combine")
    async def combine(self, buffers: Sequence[AudioBufferDescriptor]) -> CombinedAsset:
        """Combine recordings on the worker thread."""
        asset = await self.submit(WorkerOp.COMBINE, {"buffers": tuple(buffers)})
        self._metrics.record_combined_asset(asset.duration_seconds)
        return asset

    @log_execution_time(logger, "audio.analyze")
    async def analyze(self, buffer: AudioBufferDescriptor) -> QualityReport:
        """Score a single recording on the worker thread."""
        report = await self.submit(WorkerOp.ANALYZE, {"buffer": buffer})
        self._metrics.record_quality_score(report.score)
        return report

    async def submit(
        self,
        op: WorkerOp,
        payload: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> Any:
        """Post a request to the worker and wait for its single response."""
        if not self.is_running:
            raise AudioProcessingError("Audio worker not initialized")

        loop = asyncio.get_running_loop()
        request_id = request_id or uuid.uuid4().hex[:12]
        if request_id in self._pending:
            raise AudioProcessingError(f"Duplicate request id: {request_id}")

        future = loop.create_future()
        self._pending[request_id] = (loop, future)
        self._metrics.set_audio_pending(len(self._pending))

        start_time = time.perf_counter()
        self._requests.put(
            WorkerRequest(
                op=op,
                request_id=request_id,
                payload=payload,
                log_fields=current_log_context(),
            )
        )

        try:
            result = await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Audio worker request timed out",
                extra={"request_id": request_id, "operation": op.value},
            )
            self._metrics.record_audio_operation(op.value, time.perf_counter() - start_time, False)
            raise AudioProcessingError("Worker request timeout")
        except Exception:
            self._metrics.record_audio_operation(op.value, time.perf_counter() - start_time, False)
            raise
        finally:
            self._pending.pop(request_id, None)
            self._metrics.set_audio_pending(len(self._pending))

        self._metrics.record_audio_operation(op.value, time.perf_counter() - start_time, True)
        return result

    def _run(self) -> None:
        while True:
            request = self._requests.get()
            if request is _STOP:
                break

            with log_context(**{**request.log_fields, "request_id": request.request_id}):
                response = self._handle(request)
            entry = self._pending.get(response.request_id)
            if entry is None:
                # Caller gave up (timeout); drop the late response
                continue

            loop, _ = entry
            try:
                loop.call_soon_threadsafe(self._deliver, response)
            except RuntimeError:
                logger.warning(
                    "Event loop closed before audio response was delivered",
                    extra={"request_id": response.request_id},
                )

    def _handle(self, request: WorkerRequest) -> WorkerResponse:
        try:
            if request.op == WorkerOp.COMBINE:
                result = combine(request.payload["buffers"], self.context)
            elif request.op == WorkerOp.ANALYZE:
                result = analyze_quality(request.payload["buffer"])
            else:
                raise AudioProcessingError(f"Unknown operation: {request.op}")
        except VoiceCloneError as exc:
            # EmptyInputError and EncodingError reach the caller unchanged
            return WorkerResponse(request_id=request.request_id, ok=False, error=exc)
        except Exception as exc:
            label = "combination" if request.op == WorkerOp.COMBINE else "analysis"
            logger.exception(
                f"Audio {label} failed",
                extra={"request_id": request.request_id},
            )
            return WorkerResponse(
                request_id=request.request_id,
                ok=False,
                error=AudioProcessingError(
                    f"Audio {label} failed: {exc}",
                    internal_message=repr(exc),
                ),
            )

        return WorkerResponse(request_id=request.request_id, ok=True, result=result)

    def _deliver(self, response: WorkerResponse) -> None:
        entry = self._pending.get(response.request_id)
        if entry is None:
            return

        _, future = entry
        if future.done():
            return

        if response.ok:
            future.set_result(response.result)
        else:
            future.set_exception(response.error)
