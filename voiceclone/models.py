"""
Pydantic models for API request/response schemas.

These models define the contract between clients and the voice clone service.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from voiceclone.services.signal import QualityReport
from voiceclone.services.store import JobState, VoiceJob


# ============================================================================
# Audio Quality
# ============================================================================

class QualityReportResponse(BaseModel):
    """Loudness and duration analysis of one recording."""
    duration: float = Field(..., description="Duration in seconds")
    sample_rate: int
    channels: int
    rms: float
    peak: float
    is_silent: bool
    is_clipped: bool
    score: int = Field(..., ge=0, le=100, description="Quality score 0-100")
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: QualityReport) -> "QualityReportResponse":
        return cls(**report.to_dict())


# ============================================================================
# Voice Jobs
# ============================================================================

class VoiceJobResponse(BaseModel):
    """Voice job snapshot."""
    id: str
    user_id: str
    name: str
    state: JobState
    stage: str = Field(..., description="Human readable stage label")
    progress: int = Field(..., ge=0, le=100)
    error: Optional[str] = None
    recordings: List[str]
    created_at: str
    completed_at: Optional[str] = None
    result_ref: Optional[str] = Field(None, description="Trained voice profile id")
    asset_ref: Optional[str] = None
    quality_score: Optional[int] = None
    attempt: int = Field(1, ge=1, description="Run number, bumped on retry")

    @classmethod
    def from_job(cls, job: VoiceJob) -> "VoiceJobResponse":
        return cls(stage=job.stage, **job.to_dict())


class VoiceJobList(BaseModel):
    """List of voice jobs, newest first."""
    jobs: List[VoiceJobResponse]
    total: int


class CancelJobRequest(BaseModel):
    """Request to cancel a voice job."""
    reason: Optional[str] = Field(None, max_length=500, description="Reason recorded as the job error")
