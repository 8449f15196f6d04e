"""Audio processing and voice job services."""

from voiceclone.services.signal import AudioBufferDescriptor, CombinedAsset, QualityReport, analyze_quality
from voiceclone.services.pipeline import AudioWorker, ProcessingContext, combine
from voiceclone.services.store import InMemoryJobStore, JobState, RedisJobStore, VoiceJob
from voiceclone.services.jobs import JobStateMachine
from voiceclone.services.runner import JobRunner
from voiceclone.services.training import HttpTrainingClient, LocalTrainingClient, TrainingClient
from voiceclone.services.circuit_breaker import CircuitBreaker
from voiceclone.services.backoff import BackoffPolicy, retry_async

__all__ = [
    "AudioBufferDescriptor",
    "CombinedAsset",
    "QualityReport",
    "analyze_quality",
    "AudioWorker",
    "ProcessingContext",
    "combine",
    "InMemoryJobStore",
    "JobState",
    "RedisJobStore",
    "VoiceJob",
    "JobStateMachine",
    "JobRunner",
    "HttpTrainingClient",
    "LocalTrainingClient",
    "TrainingClient",
    "CircuitBreaker",
    "BackoffPolicy",
    "retry_async",
]
