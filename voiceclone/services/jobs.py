"""
Voice job state machine.

pending -> uploading -> preprocessing -> training -> validating
        -> finalizing -> completed

Processing stages only move forward (a stage may be skipped), `completed` is
entered from `finalizing` only, `failed` from any non-terminal state and
`cancelled` from any state before `finalizing`. `retry` is the one way back
to `pending`.

All mutations of one job run under that job's lock, so two concurrent
`advance` calls on the same id are applied one after the other.
Writes tagged with an `attempt` are refused once `retry` has moved the job
on to a later attempt.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence

from voiceclone.core.errors import (
    EmptyInputError,
    InvalidTransitionError,
    NotFoundError,
    StaleAttemptError,
    ValidationError,
)
from voiceclone.core.logging import get_logger
from voiceclone.core.metrics import get_metrics
from voiceclone.services.signal import QualityReport
from voiceclone.services.store import (
    InMemoryJobStore,
    JobState,
    JobStore,
    VoiceJob,
    utcnow,
)

logger = get_logger(__name__)

PROCESSING_ORDER = (
    JobState.PENDING,
    JobState.UPLOADING,
    JobState.PREPROCESSING,
    JobState.TRAINING,
    JobState.VALIDATING,
    JobState.FINALIZING,
)

STAGE_START_PROGRESS = {
    JobState.PENDING: 0,
    JobState.UPLOADING: 10,
    JobState.PREPROCESSING: 25,
    JobState.TRAINING: 50,
    JobState.VALIDATING: 80,
    JobState.FINALIZING: 95,
    JobState.COMPLETED: 100,
}

CANCELLABLE_STATES = frozenset({
    JobState.PENDING,
    JobState.UPLOADING,
    JobState.PREPROCESSING,
    JobState.TRAINING,
    JobState.VALIDATING,
})

DEFAULT_CANCEL_REASON = "Cancelled by user"


def allowed_transitions(state: JobState) -> frozenset:
    """States reachable from `state` in one step."""
    if state.is_terminal:
        return frozenset()

    later = PROCESSING_ORDER[PROCESSING_ORDER.index(state) + 1:]
    targets = set(later)
    targets.add(JobState.FAILED)
    if state == JobState.FINALIZING:
        targets.add(JobState.COMPLETED)
    if state in CANCELLABLE_STATES:
        targets.add(JobState.CANCELLED)
    return frozenset(targets)


def can_transition(current: JobState, target: JobState) -> bool:
    return target in allowed_transitions(current)


class JobStateMachine:
    """
    Sole writer of job state, progress and error.

    Usage:
        machine = JobStateMachine(store)
        job = await machine.create("My voice", ["rec-1.wav"], "user-1")
        await machine.advance(job.id, JobState.UPLOADING)
    """

    def __init__(self, store: Optional[JobStore] = None):
        self.store = store or InMemoryJobStore()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._metrics = get_metrics()

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        """Hold the job's lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                del self._locks[job_id]

    async def initialize(self) -> None:
        await self.store.initialize()

    async def shutdown(self) -> None:
        await self.store.shutdown()

    async def create(
        self,
        name: str,
        recordings: Sequence[str],
        user_id: str,
    ) -> VoiceJob:
        """Create a job in `pending` for the given recording references."""
        if not recordings:
            raise EmptyInputError("At least one recording is required")
        if not name or not name.strip():
            raise ValidationError("Job name must not be empty")
        if not user_id:
            raise ValidationError("User id is required")

        job = VoiceJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name.strip(),
            recordings=list(recordings),
        )
        await self.store.save(job)
        self._metrics.record_transition(job.state.value, entered_terminal=False, created=True)

        logger.info(
            f"Created voice job {job.id}",
            extra={
                "job_id": job.id,
                "user_id": user_id,
                "recording_count": len(job.recordings),
            },
        )
        return job

    async def advance(
        self,
        job_id: str,
        next_state: JobState,
        progress: Optional[int] = None,
        *,
        error: Optional[str] = None,
        result_ref: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> VoiceJob:
        """
        Move a job to `next_state`, or update progress within its current state.

        Raises InvalidTransitionError for edges the graph does not have and for
        progress that would go backwards.
        With `attempt`, raises StaleAttemptError if the job has been retried
        since that attempt started.
        """
        next_state = JobState(next_state)
        if progress is not None and not 0 <= progress <= 100:
            raise ValidationError(
                "Progress must be between 0 and 100",
                details={"progress": progress},
            )

        async with self._job_lock(job_id):
            job = await self._load(job_id, attempt)
            current = job.state

            if next_state == current and not current.is_terminal:
                if progress is None:
                    return job
                if progress < job.progress:
                    raise InvalidTransitionError(
                        job_id,
                        current.value,
                        next_state.value,
                        reason=f"Progress cannot decrease ({job.progress} -> {progress})",
                    )
                job.progress = progress
                await self.store.save(job)
                return job

            if not can_transition(current, next_state):
                raise InvalidTransitionError(job_id, current.value, next_state.value)

            if next_state == JobState.FAILED:
                if not error or not error.strip():
                    raise ValidationError("A failed job must carry an error message")
                job.error = error
            elif next_state == JobState.CANCELLED:
                job.error = error or DEFAULT_CANCEL_REASON
            else:
                start = STAGE_START_PROGRESS[next_state]
                requested = progress if progress is not None else start
                job.progress = min(100, max(start, requested, job.progress))

            if next_state == JobState.COMPLETED:
                job.result_ref = result_ref

            job.state = next_state
            if next_state.is_terminal:
                job.completed_at = utcnow()

            await self.store.save(job)
            self._metrics.record_transition(next_state.value, entered_terminal=next_state.is_terminal)

        log = logger.warning if next_state in (JobState.FAILED, JobState.CANCELLED) else logger.info
        log(
            f"Job {job_id}: {current.value} -> {next_state.value}",
            extra={
                "job_id": job_id,
                "from_state": current.value,
                "to_state": next_state.value,
                "progress": job.progress,
                "error": job.error,
            },
        )
        return job

    async def fail(self, job_id: str, error: str, attempt: Optional[int] = None) -> VoiceJob:
        """Shorthand for advance(job_id, FAILED, error=...)."""
        return await self.advance(job_id, JobState.FAILED, error=error, attempt=attempt)

    async def cancel(self, job_id: str, reason: Optional[str] = None) -> VoiceJob:
        """
        Cancel a job that has not reached `finalizing`.

        Cancellation is recorded as a failure whose error is the reason, so
        consumers only have one "no usable profile" outcome to handle.
        """
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.state not in CANCELLABLE_STATES:
                raise InvalidTransitionError(
                    job_id,
                    job.state.value,
                    JobState.FAILED.value,
                    reason=f"Job in state {job.state.value} can no longer be cancelled",
                )

            previous = job.state
            job.state = JobState.FAILED
            job.error = (reason or "").strip() or DEFAULT_CANCEL_REASON
            job.completed_at = utcnow()
            await self.store.save(job)
            self._metrics.record_transition(JobState.FAILED.value, entered_terminal=True)

        logger.info(
            f"Cancelled job {job_id}",
            extra={"job_id": job_id, "from_state": previous.value, "reason": job.error},
        )
        return job

    async def retry(self, job_id: str) -> VoiceJob:
        """Return a failed job to `pending`, keeping its id and recordings."""
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.state != JobState.FAILED:
                raise InvalidTransitionError(
                    job_id,
                    job.state.value,
                    JobState.PENDING.value,
                    reason=f"Only failed jobs can be retried (state is {job.state.value})",
                )

            job.state = JobState.PENDING
            job.attempt += 1
            job.progress = 0
            job.error = None
            job.completed_at = None
            job.result_ref = None
            await self.store.save(job)
            self._metrics.record_transition(job.state.value, entered_terminal=False, created=True)

        logger.info(
            f"Retrying job {job_id}",
            extra={"job_id": job_id, "attempt": job.attempt},
        )
        return job

    async def get_status(self, job_id: str) -> VoiceJob:
        """Read-only snapshot of a job."""
        return await self._load(job_id)

    async def list_jobs(self, user_id: Optional[str] = None) -> List[VoiceJob]:
        return await self.store.list(user_id=user_id)

    async def attach_asset(
        self,
        job_id: str,
        asset_ref: str,
        attempt: Optional[int] = None,
    ) -> VoiceJob:
        async with self._job_lock(job_id):
            job = await self._load(job_id, attempt)
            job.asset_ref = asset_ref
            await self.store.save(job)
            return job

    async def record_quality(
        self,
        job_id: str,
        report: QualityReport,
        attempt: Optional[int] = None,
    ) -> VoiceJob:
        async with self._job_lock(job_id):
            job = await self._load(job_id, attempt)
            job.quality_score = report.score
            await self.store.save_quality(job_id, report)
            await self.store.save(job)
            return job

    async def get_quality(self, job_id: str) -> Optional[QualityReport]:
        await self._load(job_id)
        return await self.store.get_quality(job_id)

    async def _load(self, job_id: str, attempt: Optional[int] = None) -> VoiceJob:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError("voice_job", job_id)
        if attempt is not None and attempt != job.attempt:
            raise StaleAttemptError(job_id, attempt, job.attempt)
        return job
