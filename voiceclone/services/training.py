"""
Clients for the remote voice training service.

The service accepts a combined WAV asset plus a display name and user id,
and answers with an opaque trained-profile id. Any failure is raised as
RemoteTrainingError with the service's own message preserved.
"""

import asyncio
import uuid
from typing import Any, Dict, Optional

import httpx

from voiceclone.core.errors import RemoteTrainingError
from voiceclone.core.logging import get_logger
from voiceclone.core.tracing import trace_external_call
from voiceclone.services.backoff import BackoffPolicy, retry_async
from voiceclone.services.circuit_breaker import CircuitBreaker
from voiceclone.services.signal import CombinedAsset

logger = get_logger(__name__)


class TrainingClient:
    """Interface of the remote training service."""

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def train(self, asset: CombinedAsset, name: str, user_id: str) -> str:
        """Train a voice profile from `asset` and return its id."""
        raise NotImplementedError

    async def validate(self, profile_id: str) -> None:
        """Raise RemoteTrainingError if the trained profile is not usable."""


class LocalTrainingClient(TrainingClient):
    """Simulated training for development, no external calls."""

    def __init__(self, delay_seconds: float = 1.0):
        self.delay_seconds = delay_seconds

    async def train(self, asset: CombinedAsset, name: str, user_id: str) -> str:
        logger.info(
            "Simulating voice training",
            extra={
                "voice_name": name,
                "user_id": user_id,
                "asset_seconds": round(asset.duration_seconds, 2),
            },
        )
        await asyncio.sleep(self.delay_seconds)
        return f"local-{uuid.uuid4().hex[:12]}"


class HttpTrainingClient(TrainingClient):
    """
    HTTP client for a hosted voice training API.

    Transport errors are retried with exponential backoff; repeated failures
    open a circuit breaker so a dead service fails jobs quickly.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 600.0,
        backoff: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy(max_attempts=3, base_delay=1.0)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.breaker = CircuitBreaker(
            service="training",
            failure_threshold=3,
            recovery_timeout=60,
        )

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @trace_external_call("training", "train")
    async def train(self, asset: CombinedAsset, name: str, user_id: str) -> str:
        client = await self._get_client()

        async def send() -> httpx.Response:
            return await client.post(
                "/voices/train",
                data={"name": name, "user_id": user_id},
                files={"audio": ("voice.wav", asset.data, "audio/wav")},
            )

        payload = await self._request(send)
        profile_id = payload.get("profile_id") or payload.get("voice_id")
        if not profile_id:
            raise RemoteTrainingError("Training service returned no profile id")

        logger.info(
            "Remote training finished",
            extra={"profile_id": profile_id, "user_id": user_id},
        )
        return str(profile_id)

    @trace_external_call("training", "validate")
    async def validate(self, profile_id: str) -> None:
        client = await self._get_client()

        async def send() -> httpx.Response:
            return await client.get(f"/voices/{profile_id}")

        payload = await self._request(send)
        status = payload.get("status", "ready")
        if status not in ("ready", "completed"):
            raise RemoteTrainingError(
                f"Voice profile {profile_id} is not ready (status: {status})"
            )

    async def _request(self, send) -> Dict[str, Any]:
        self.breaker.check()

        try:
            response = await retry_async(
                send,
                self.backoff,
                retry_on=(httpx.TransportError,),
            )
        except httpx.HTTPError as exc:
            self.breaker.record_failure()
            raise RemoteTrainingError(
                f"Training service unreachable: {exc}" if str(exc) else "Training service unreachable"
            ) from exc

        if response.status_code >= 400:
            if response.status_code >= 500:
                self.breaker.record_failure()
            raise RemoteTrainingError(
                f"Training request failed: {response.status_code} {_error_text(response)}".strip(),
                status=response.status_code,
            )

        self.breaker.record_success()
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteTrainingError("Training service returned invalid JSON") from exc


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message", ""))
        if error:
            return str(error)
        return str(body.get("message", ""))
    return response.text
