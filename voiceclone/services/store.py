"""
Voice job records and their persistence.

Features:
- VoiceJob / JobState definitions shared by the state machine and transport
- In-memory store for development and tests
- Redis store with per-user indexes and TTL
"""

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from voiceclone.core.logging import get_logger
from voiceclone.services.signal import QualityReport

logger = get_logger(__name__)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PREPROCESSING = "preprocessing"
    TRAINING = "training"
    VALIDATING = "validating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

# Jobs in these states still have work ahead of them. `finalizing` is
# included so pollers keep watching until the terminal state arrives.
OUTSTANDING_STATES = frozenset({
    JobState.PENDING,
    JobState.UPLOADING,
    JobState.PREPROCESSING,
    JobState.TRAINING,
    JobState.VALIDATING,
    JobState.FINALIZING,
})

STAGE_LABELS = {
    JobState.PENDING: "Waiting in queue",
    JobState.UPLOADING: "Uploading audio files",
    JobState.PREPROCESSING: "Processing audio quality",
    JobState.TRAINING: "Training voice model",
    JobState.VALIDATING: "Validating voice quality",
    JobState.FINALIZING: "Finalizing voice profile",
    JobState.COMPLETED: "Voice profile ready",
    JobState.FAILED: "Processing failed",
    JobState.CANCELLED: "Cancelled",
}


@dataclass
class VoiceJob:
    """One voice clone training request."""

    id: str
    user_id: str
    name: str
    recordings: List[str]
    state: JobState = JobState.PENDING
    progress: int = 0
    error: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    completed_at: Optional[str] = None
    result_ref: Optional[str] = None
    asset_ref: Optional[str] = None
    quality_score: Optional[int] = None
    # Bumped by retry; work from an earlier attempt must not touch the job
    attempt: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_outstanding(self) -> bool:
        return self.state in OUTSTANDING_STATES

    @property
    def stage(self) -> str:
        return STAGE_LABELS[self.state]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["recordings"] = list(self.recordings)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceJob":
        data = dict(data)
        data["state"] = JobState(data["state"])
        data["recordings"] = list(data.get("recordings", []))
        data.pop("stage", None)
        return cls(**data)


class JobStore:
    """Durable storage for voice jobs and their quality reports, keyed by job id."""

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def get(self, job_id: str) -> Optional[VoiceJob]:
        raise NotImplementedError

    async def save(self, job: VoiceJob) -> None:
        raise NotImplementedError

    async def list(self, user_id: Optional[str] = None) -> List[VoiceJob]:
        raise NotImplementedError

    async def save_quality(self, job_id: str, report: QualityReport) -> None:
        raise NotImplementedError

    async def get_quality(self, job_id: str) -> Optional[QualityReport]:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """Process-local store. Records are kept serialized so callers never share objects."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._quality: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[VoiceJob]:
        data = self._jobs.get(job_id)
        return VoiceJob.from_dict(data) if data else None

    async def save(self, job: VoiceJob) -> None:
        async with self._lock:
            self._jobs[job.id] = job.to_dict()

    async def list(self, user_id: Optional[str] = None) -> List[VoiceJob]:
        jobs = [VoiceJob.from_dict(d) for d in self._jobs.values()]
        if user_id:
            jobs = [j for j in jobs if j.user_id == user_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def save_quality(self, job_id: str, report: QualityReport) -> None:
        self._quality[job_id] = report.to_dict()

    async def get_quality(self, job_id: str) -> Optional[QualityReport]:
        data = self._quality.get(job_id)
        return QualityReport.from_dict(data) if data else None


class RedisJobStore(JobStore):
    """
    Redis-backed job store.

    Usage:
        store = RedisJobStore(redis_url="redis://localhost:6379")
        await store.initialize()
        await store.save(job)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "voiceclone:",
        ttl_seconds: int = 86400 * 7,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._redis = client

    async def initialize(self) -> None:
        """Initialize Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        await self._redis.ping()
        logger.info(f"Connected to Redis: {self.redis_url}")

    async def shutdown(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _quality_key(self, job_id: str) -> str:
        return f"{self.prefix}quality:{job_id}"

    def _index_key(self) -> str:
        return f"{self.prefix}jobs"

    def _user_index_key(self, user_id: str) -> str:
        return f"{self.prefix}user:{user_id}:jobs"

    async def get(self, job_id: str) -> Optional[VoiceJob]:
        data = await self._redis.get(self._job_key(job_id))
        if not data:
            return None
        return VoiceJob.from_dict(json.loads(data))

    async def save(self, job: VoiceJob) -> None:
        score = datetime.fromisoformat(job.created_at).timestamp()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), json.dumps(job.to_dict()), ex=self.ttl_seconds)
            pipe.zadd(self._index_key(), {job.id: score})
            pipe.zadd(self._user_index_key(job.user_id), {job.id: score})
            await pipe.execute()

    async def list(self, user_id: Optional[str] = None) -> List[VoiceJob]:
        key = self._user_index_key(user_id) if user_id else self._index_key()
        job_ids = await self._redis.zrevrange(key, 0, -1)
        if not job_ids:
            return []

        values = await self._redis.mget([self._job_key(j) for j in job_ids])
        jobs = []
        for job_id, value in zip(job_ids, values):
            if value is None:
                # Expired record, drop it from the index
                await self._redis.zrem(key, job_id)
                continue
            jobs.append(VoiceJob.from_dict(json.loads(value)))
        return jobs

    async def save_quality(self, job_id: str, report: QualityReport) -> None:
        await self._redis.set(
            self._quality_key(job_id),
            json.dumps(report.to_dict()),
            ex=self.ttl_seconds,
        )

    async def get_quality(self, job_id: str) -> Optional[QualityReport]:
        data = await self._redis.get(self._quality_key(job_id))
        return QualityReport.from_dict(json.loads(data)) if data else None
