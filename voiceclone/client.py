"""
Voice job client and poller.

Usage:
    client = JobsClient(api_url="http://localhost:8000")
    job = await client.create_job("My voice", "user-1", ["take1.wav", "take2.wav"])

    poller = JobPoller(client, user_id="user-1", on_terminal=print)
    poller.track(job)
    await poller.start()
"""

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from voiceclone.core.errors import VoiceCloneError
from voiceclone.core.logging import get_logger
from voiceclone.services.backoff import BackoffPolicy, retry_async
from voiceclone.services.signal import QualityReport
from voiceclone.services.store import VoiceJob

logger = get_logger(__name__)

Recording = Union[str, Path, Tuple[str, bytes]]
JobCallback = Callable[[VoiceJob], Any]


class JobsClient:
    """
    HTTP client for the voice job API.

    Transport errors are retried with exponential backoff; error responses
    are raised as VoiceCloneError carrying the server's code and message.
    """

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        backoff: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Get request headers."""
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close client connections."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "JobsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Voice Jobs
    # =========================================================================

    async def create_job(
        self,
        name: str,
        user_id: str,
        recordings: Sequence[Recording],
    ) -> VoiceJob:
        """
        Upload recordings and create a voice job.

        Args:
            name: Display name for the voice
            user_id: Owner of the job
            recordings: File paths, or (filename, bytes) pairs

        Returns:
            The newly created job
        """
        files = []
        for recording in recordings:
            if isinstance(recording, tuple):
                filename, data = recording
            else:
                path = Path(recording)
                filename, data = path.name, path.read_bytes()
            files.append(("recordings", (filename, data, "application/octet-stream")))

        payload = await self._request(
            "POST",
            "/v1/voice-jobs",
            data={"name": name, "user_id": user_id},
            files=files,
        )
        return VoiceJob.from_dict(payload)

    async def list_jobs(self, user_id: Optional[str] = None) -> List[VoiceJob]:
        params = {"user_id": user_id} if user_id else None
        payload = await self._request("GET", "/v1/voice-jobs", params=params)
        return [VoiceJob.from_dict(j) for j in payload["jobs"]]

    async def get_job(self, job_id: str) -> VoiceJob:
        return VoiceJob.from_dict(await self._request("GET", f"/v1/voice-jobs/{job_id}"))

    async def cancel_job(self, job_id: str, reason: Optional[str] = None) -> VoiceJob:
        payload = await self._request(
            "POST",
            f"/v1/voice-jobs/{job_id}/cancel",
            json={"reason": reason} if reason else None,
        )
        return VoiceJob.from_dict(payload)

    async def retry_job(self, job_id: str) -> VoiceJob:
        return VoiceJob.from_dict(await self._request("POST", f"/v1/voice-jobs/{job_id}/retry"))

    async def analyze(self, recording: Recording) -> QualityReport:
        """Score a single recording on the server."""
        if isinstance(recording, tuple):
            filename, data = recording
        else:
            path = Path(recording)
            filename, data = path.name, path.read_bytes()

        payload = await self._request(
            "POST",
            "/v1/audio/analyze",
            files={"file": (filename, data, "application/octet-stream")},
        )
        return QualityReport.from_dict(payload)

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        client = await self._get_client()

        async def send() -> httpx.Response:
            return await client.request(method, url, **kwargs)

        response = await retry_async(send, self.backoff, retry_on=(httpx.TransportError,))
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response.json()


def _error_from_response(response: httpx.Response) -> VoiceCloneError:
    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    if not isinstance(error, dict):
        error = {"message": str(error)}

    return VoiceCloneError(
        message=error.get("message") or f"Request failed with status {response.status_code}",
        code=error.get("code") or "HTTP_ERROR",
        status_code=response.status_code,
        details=error.get("details") or {},
    )


class JobPoller:
    """
    Keeps a local view of a user's jobs fresh.

    Polling runs only while at least one known job is outstanding and the
    poller is in the foreground. Outstanding includes `finalizing`, not only
    pending through validating: a job that is finalizing has not reported
    its terminal state yet, and stopping there would lose `on_terminal`. Every refresh replaces the whole view with
    the server's list. Jobs that leave an outstanding state for a terminal
    one are reported through `on_terminal`.
    """

    def __init__(
        self,
        client: JobsClient,
        user_id: Optional[str] = None,
        interval: float = 3.0,
        on_update: Optional[JobCallback] = None,
        on_terminal: Optional[JobCallback] = None,
    ):
        self.client = client
        self.user_id = user_id
        self.interval = interval
        self.on_update = on_update
        self.on_terminal = on_terminal
        self.jobs: Dict[str, VoiceJob] = {}
        self._foreground = True
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def polling_enabled(self) -> bool:
        """True while any known job still has work ahead of it."""
        return any(job.is_outstanding for job in self.jobs.values())

    @property
    def is_polling(self) -> bool:
        return self.polling_enabled and self._foreground and self._task is not None

    @property
    def foreground(self) -> bool:
        return self._foreground

    def track(self, job: VoiceJob) -> None:
        """Add a freshly created job to the view."""
        self.jobs[job.id] = job
        self._reschedule()

    def set_foreground(self, foreground: bool) -> None:
        """Pause polling while backgrounded, resume when foregrounded."""
        self._foreground = foreground
        logger.debug(
            "Poller foreground changed",
            extra={"foreground": foreground, "polling_enabled": self.polling_enabled},
        )
        self._reschedule()

    async def refresh(self) -> List[VoiceJob]:
        """Replace the view with the server's job list and fire callbacks."""
        jobs = await self.client.list_jobs(user_id=self.user_id)
        previous = self.jobs
        self.jobs = {job.id: job for job in jobs}

        for job in jobs:
            before = previous.get(job.id)
            if before is not None and before.is_outstanding and job.is_terminal:
                logger.info(
                    f"Job {job.id} finished: {job.state.value}",
                    extra={"job_id": job.id, "state": job.state.value, "error": job.error},
                )
                await _notify(self.on_terminal, job)

        for job in jobs:
            await _notify(self.on_update, job)

        self._reschedule()
        return jobs

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="voiceclone-poller")
        self._reschedule()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def wait_idle(self) -> None:
        """Poll until no job is outstanding."""
        await self.start()
        while self.polling_enabled:
            await asyncio.sleep(min(self.interval, 0.5))

    def _reschedule(self) -> None:
        if self.polling_enabled and self._foreground:
            self._wake.set()
        else:
            self._wake.clear()

    async def _run(self) -> None:
        while True:
            await self._wake.wait()
            await asyncio.sleep(self.interval)
            if not (self.polling_enabled and self._foreground):
                continue
            try:
                await self.refresh()
            except (httpx.HTTPError, VoiceCloneError) as exc:
                # Next tick retries
                logger.warning(f"Job refresh failed: {exc}", extra={"error": str(exc)})


async def _notify(callback: Optional[JobCallback], job: VoiceJob) -> None:
    if callback is None:
        return
    result = callback(job)
    if inspect.isawaitable(result):
        await result
