"""
Voice job endpoints.

Provides:
- Create a job from uploaded recordings
- Monitor job progress and quality
- Cancel and retry jobs
- Download the combined training asset
- One-off recording quality analysis
"""

import asyncio
from typing import List, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import Response

from voiceclone.core.dependencies import get_container
from voiceclone.core.errors import EmptyInputError, NotFoundError
from voiceclone.core.logging import get_logger
from voiceclone.models import (
    CancelJobRequest,
    QualityReportResponse,
    VoiceJobList,
    VoiceJobResponse,
)
from voiceclone.services.recordings import decode_audio

logger = get_logger(__name__)
router = APIRouter()


@router.post("/voice-jobs", response_model=VoiceJobResponse, status_code=201)
async def create_voice_job(
    request: Request,
    name: str = Form(..., description="Display name for the voice"),
    user_id: str = Form(..., description="Owner of the job"),
    recordings: Optional[List[UploadFile]] = File(None, description="Captured recordings"),
):
    """
    Create a voice job and start processing it.

    Every upload is decoded before the job is created, so a job never
    references a recording that cannot be combined.
    """
    if not recordings:
        raise EmptyInputError("At least one recording is required")

    container = get_container()
    store = await container.get("recordings")
    machine = await container.get("state_machine")
    runner = await container.get("runner")

    refs = []
    for upload in recordings:
        data = await upload.read()
        refs.append(await store.save_recording(data, upload.filename or "recording.wav"))

    job = await machine.create(name, refs, user_id)
    runner.submit(job.id, attempt=job.attempt)

    logger.info(
        f"Submitted voice job {job.id}",
        extra={"job_id": job.id, "user_id": user_id, "recording_count": len(refs)},
    )
    return VoiceJobResponse.from_job(job)


@router.get("/voice-jobs", response_model=VoiceJobList)
async def list_voice_jobs(user_id: Optional[str] = None):
    """List voice jobs, newest first."""
    machine = await get_container().get("state_machine")
    jobs = await machine.list_jobs(user_id=user_id)
    return VoiceJobList(
        jobs=[VoiceJobResponse.from_job(j) for j in jobs],
        total=len(jobs),
    )


@router.get("/voice-jobs/{job_id}", response_model=VoiceJobResponse)
async def get_voice_job(job_id: str):
    """Get voice job status."""
    machine = await get_container().get("state_machine")
    return VoiceJobResponse.from_job(await machine.get_status(job_id))


@router.get("/voice-jobs/{job_id}/quality", response_model=QualityReportResponse)
async def get_voice_job_quality(job_id: str):
    """Quality report of the job's combined asset."""
    machine = await get_container().get("state_machine")
    report = await machine.get_quality(job_id)
    if report is None:
        raise NotFoundError("quality_report", job_id)
    return QualityReportResponse.from_report(report)


@router.get("/voice-jobs/{job_id}/asset")
async def download_voice_job_asset(job_id: str):
    """Download the combined 44.1kHz mono WAV asset."""
    container = get_container()
    machine = await container.get("state_machine")
    store = await container.get("recordings")

    job = await machine.get_status(job_id)
    if not job.asset_ref:
        raise NotFoundError("combined_asset", job_id)

    asset = await store.read_asset(job.asset_ref)
    return Response(
        content=asset.data,
        media_type="audio/wav",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.wav"'},
    )


@router.post("/voice-jobs/{job_id}/cancel", response_model=VoiceJobResponse)
async def cancel_voice_job(job_id: str, body: Optional[CancelJobRequest] = None):
    """Cancel a voice job that has not reached finalization."""
    machine = await get_container().get("state_machine")
    job = await machine.cancel(job_id, body.reason if body else None)
    return VoiceJobResponse.from_job(job)


@router.post("/voice-jobs/{job_id}/retry", response_model=VoiceJobResponse)
async def retry_voice_job(job_id: str):
    """Return a failed job to pending and run it again."""
    container = get_container()
    machine = await container.get("state_machine")
    runner = await container.get("runner")

    job = await machine.retry(job_id)
    runner.submit(job.id, attempt=job.attempt)
    return VoiceJobResponse.from_job(job)


@router.post("/audio/analyze", response_model=QualityReportResponse)
async def analyze_recording(file: UploadFile = File(..., description="Recording to analyze")):
    """Score a single recording without creating a job."""
    data = await file.read()
    buffer = await asyncio.to_thread(decode_audio, data)

    worker = await get_container().get("audio_worker")
    report = await worker.analyze(buffer)
    return QualityReportResponse.from_report(report)
