"""
Voice Clone Pipeline

Turns captured voice recordings into a single training asset and tracks the
voice training job built from it.

Modules:
- services.signal: mixing, resampling, filtering, WAV encoding, quality scoring
- services.pipeline: audio worker thread
- services.jobs: job state machine
- services.runner: drives jobs through the pipeline stages
- client: HTTP client and job poller
- app: FastAPI application factory
- cli: command line entry point

Usage:
    # Run the API server
    voiceclone serve

    # Or with uvicorn directly
    uvicorn voiceclone.app:create_app --factory --host 0.0.0.0 --port 8000
"""

__version__ = "1.0.0"

from voiceclone.core.config import Settings, get_settings
from voiceclone.models import (
    CancelJobRequest,
    QualityReportResponse,
    VoiceJobList,
    VoiceJobResponse,
)

__all__ = [
    "get_settings",
    "Settings",
    "CancelJobRequest",
    "QualityReportResponse",
    "VoiceJobList",
    "VoiceJobResponse",
]
