"""
Drives voice jobs through upload, preprocessing, training, validation and
finalization.

Every failure ends in `advance(..., failed)` with a non-empty message.
Cancellation is cooperative: an in-flight remote call is allowed to finish,
and the runner stops at the next transition the job no longer accepts.

Each run is tied to the job's `attempt`. Every write is made with that
attempt, so once a job is retried the earlier run can no longer touch it.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from voiceclone.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    RemoteTrainingError,
    StaleAttemptError,
)
from voiceclone.core.logging import get_logger, log_context
from voiceclone.core.metrics import get_metrics
from voiceclone.services.jobs import JobStateMachine
from voiceclone.services.pipeline import AudioWorker
from voiceclone.services.recordings import RecordingStore, decode_audio
from voiceclone.services.store import JobState
from voiceclone.services.training import TrainingClient

logger = get_logger(__name__)


@dataclass
class _Run:
    task: asyncio.Task
    attempt: Optional[int]


class JobRunner:
    """Runs each submitted job as its own asyncio task."""

    def __init__(
        self,
        machine: JobStateMachine,
        worker: AudioWorker,
        recordings: RecordingStore,
        training: TrainingClient,
    ):
        self.machine = machine
        self.worker = worker
        self.recordings = recordings
        self.training = training
        self._runs: Dict[str, _Run] = {}
        self._metrics = get_metrics()

    async def initialize(self) -> None:
        logger.info("Job runner initialized")

    async def shutdown(self) -> None:
        """Cancel in-flight job tasks."""
        tasks = [run.task for run in self._runs.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

    def submit(self, job_id: str, attempt: Optional[int] = None) -> asyncio.Task:
        """
        Start processing a pending job in the background.

        A task already running the same attempt is returned as is. A task
        still busy with an earlier attempt (a retry came in while it waited
        on a remote call) is cancelled and replaced.
        """
        current = self._runs.get(job_id)
        if current is not None and not current.task.done():
            if attempt is None or current.attempt == attempt:
                return current.task
            logger.info(
                f"Replacing run of job {job_id} for attempt {attempt}",
                extra={"job_id": job_id, "previous_attempt": current.attempt, "attempt": attempt},
            )
            current.task.cancel()

        task = asyncio.create_task(self.run(job_id, attempt), name=f"voice-job-{job_id}")
        self._runs[job_id] = _Run(task=task, attempt=attempt)
        task.add_done_callback(lambda t: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        run = self._runs.get(job_id)
        if run is not None and run.task is task:
            del self._runs[job_id]

    def _owns(self, job_id: str) -> bool:
        run = self._runs.get(job_id)
        return run is not None and run.task is asyncio.current_task()

    def is_running(self, job_id: str) -> bool:
        run = self._runs.get(job_id)
        return run is not None and not run.task.done()

    async def run(self, job_id: str, attempt: Optional[int] = None) -> None:
        """Run the job's current attempt (or `attempt`) to a terminal state."""
        with log_context(job_id=job_id):
            try:
                if attempt is None:
                    attempt = (await self.machine.get_status(job_id)).attempt

                while attempt is not None:
                    attempt = await self._run_attempt(job_id, attempt)
            except NotFoundError:
                logger.warning(f"Job {job_id} disappeared before it ran", extra={"job_id": job_id})
            except asyncio.CancelledError:
                logger.info(f"Job {job_id} task cancelled", extra={"job_id": job_id})
                raise

    async def _run_attempt(self, job_id: str, attempt: int) -> Optional[int]:
        """Run one attempt. Returns the attempt to run next, if this task should go on."""
        with log_context(attempt=attempt):
            try:
                try:
                    await self._run_stages(job_id, attempt)
                except StaleAttemptError:
                    raise
                except InvalidTransitionError as exc:
                    await self._handle_rejected_transition(job_id, attempt, exc)
                except Exception as exc:
                    await self._fail(job_id, attempt, exc)
            except StaleAttemptError as exc:
                logger.info(
                    f"Attempt {attempt} of job {job_id} superseded by attempt {exc.current_attempt}",
                    extra={"job_id": job_id, "current_attempt": exc.current_attempt},
                )
                # Retried without a new submit: this task picks up the new attempt
                if self._owns(job_id):
                    return exc.current_attempt
        return None

    async def _run_stages(self, job_id: str, attempt: int) -> None:
        machine = self.machine

        job = await machine.advance(job_id, JobState.UPLOADING, attempt=attempt)
        buffers = []
        for index, ref in enumerate(job.recordings):
            buffers.append(await self.recordings.load(ref))
            progress = 10 + int(15 * (index + 1) / len(job.recordings))
            await machine.advance(job_id, JobState.UPLOADING, min(progress, 24), attempt=attempt)

        await machine.advance(job_id, JobState.PREPROCESSING, attempt=attempt)
        asset = await self.worker.combine(buffers)
        await machine.advance(job_id, JobState.PREPROCESSING, 35, attempt=attempt)

        report = await self.worker.analyze(decode_audio(asset.data))
        await machine.record_quality(job_id, report, attempt=attempt)
        asset_ref = await self.recordings.save_asset(job_id, asset)
        await machine.attach_asset(job_id, asset_ref, attempt=attempt)
        await machine.advance(job_id, JobState.PREPROCESSING, 45, attempt=attempt)

        await machine.advance(job_id, JobState.TRAINING, attempt=attempt)
        try:
            profile_id = await self.training.train(asset, job.name, job.user_id)
        except RemoteTrainingError:
            self._metrics.record_training_call(success=False)
            raise
        except Exception as exc:
            self._metrics.record_training_call(success=False)
            raise RemoteTrainingError(str(exc) or type(exc).__name__) from exc
        self._metrics.record_training_call(success=True)

        await machine.advance(job_id, JobState.VALIDATING, attempt=attempt)
        try:
            await self.training.validate(profile_id)
        except RemoteTrainingError:
            raise
        except Exception as exc:
            raise RemoteTrainingError(str(exc) or type(exc).__name__) from exc

        await machine.advance(job_id, JobState.FINALIZING, attempt=attempt)
        await machine.advance(
            job_id,
            JobState.COMPLETED,
            100,
            result_ref=profile_id,
            attempt=attempt,
        )

    async def _handle_rejected_transition(
        self,
        job_id: str,
        attempt: int,
        exc: InvalidTransitionError,
    ) -> None:
        job = await self.machine.get_status(job_id)
        if job.attempt != attempt:
            raise StaleAttemptError(job_id, attempt, job.attempt)
        if job.is_terminal:
            # Cancelled or failed while we were working
            logger.info(
                f"Job {job_id} stopped in state {job.state.value}",
                extra={"job_id": job_id, "state": job.state.value},
            )
            return
        await self._fail(job_id, attempt, exc)

    async def _fail(self, job_id: str, attempt: int, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        logger.error(
            f"Job {job_id} failed: {message}",
            extra={"job_id": job_id, "error_type": type(exc).__name__},
        )
        try:
            await self.machine.fail(job_id, message, attempt=attempt)
        except InvalidTransitionError:
            logger.info(
                f"Job {job_id} already terminal, failure not recorded",
                extra={"job_id": job_id, "error": message},
            )
        except NotFoundError:
            logger.warning(f"Job {job_id} disappeared while running", extra={"job_id": job_id})

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        """Wait for a submitted job's task to finish."""
        run = self._runs.get(job_id)
        if run is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout)
