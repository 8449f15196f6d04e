"""
Pytest configuration and shared fixtures.
"""

import asyncio
import io
import time
from typing import Generator, List, Optional

import numpy as np
import pytest
import soundfile as sf
from fastapi.testclient import TestClient

from voiceclone.core.errors import RemoteTrainingError
from voiceclone.services.signal import AudioBufferDescriptor, CombinedAsset
from voiceclone.services.training import TrainingClient


def sine(sample_rate: int, seconds: float, freq: float = 440.0, amplitude: float = 0.5) -> np.ndarray:
    frames = int(round(sample_rate * seconds))
    t = np.arange(frames, dtype=np.float64) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def make_buffer(
    sample_rate: int = 44100,
    seconds: float = 1.0,
    channels: int = 1,
    freq: float = 440.0,
    amplitude: float = 0.5,
) -> AudioBufferDescriptor:
    mono = sine(sample_rate, seconds, freq, amplitude)
    return AudioBufferDescriptor(sample_rate=sample_rate, channel_data=tuple(mono for _ in range(channels)))


def wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode samples as a 16-bit WAV file in memory."""
    out = io.BytesIO()
    sf.write(out, samples, sample_rate, format="WAV", subtype="PCM_16")
    return out.getvalue()


class FakeTrainingClient(TrainingClient):
    """Records calls; optionally fails or blocks until released."""

    def __init__(self, fail_with: Optional[Exception] = None, validate_error: Optional[Exception] = None):
        self.fail_with = fail_with
        self.validate_error = validate_error
        self.train_calls: List[tuple] = []
        self.validated: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None

    def block(self) -> None:
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def train(self, asset: CombinedAsset, name: str, user_id: str) -> str:
        self.train_calls.append((asset, name, user_id))
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return f"profile-{len(self.train_calls)}"

    async def validate(self, profile_id: str) -> None:
        self.validated.append(profile_id)
        if self.validate_error is not None:
            raise self.validate_error


@pytest.fixture
def buffer_factory():
    return make_buffer


@pytest.fixture
def wav_factory():
    return wav_bytes


@pytest.fixture
def fake_training():
    return FakeTrainingClient()


@pytest.fixture
def failing_training():
    return FakeTrainingClient(fail_with=RemoteTrainingError("GPU quota exceeded"))


@pytest.fixture
async def worker():
    from voiceclone.services.pipeline import AudioWorker

    audio_worker = AudioWorker(timeout=10.0)
    await audio_worker.initialize()
    yield audio_worker
    await audio_worker.shutdown()


@pytest.fixture
def machine():
    from voiceclone.services.jobs import JobStateMachine
    from voiceclone.services.store import InMemoryJobStore

    return JobStateMachine(InMemoryJobStore())


@pytest.fixture
async def recordings(tmp_path):
    from voiceclone.services.recordings import RecordingStore

    store = RecordingStore(str(tmp_path / "storage"))
    await store.initialize()
    return store


@pytest.fixture
def settings(tmp_path):
    from voiceclone.core.config import Settings

    return Settings(
        debug=True,
        log_level="WARNING",
        storage_dir=str(tmp_path / "storage"),
        redis_url=None,
        training_api_url=None,
        otlp_endpoint=None,
    )


@pytest.fixture
def container(fake_training):
    """Container whose training client is faked."""
    from voiceclone.core.dependencies import Container

    container = Container()
    container.override("training_client", fake_training)
    return container


@pytest.fixture
def app(settings, container):
    """Create test FastAPI app with faked remote training."""
    from voiceclone.app import create_app

    return create_app(settings=settings, testing=True, container=container)


@pytest.fixture
def client(app) -> Generator:
    """Sync test client."""
    with TestClient(app) as client:
        yield client


def wait_for_state(client: TestClient, job_id: str, states, timeout: float = 15.0) -> dict:
    """Poll the job until it reaches one of `states`."""
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/v1/voice-jobs/{job_id}").json()
        if job["state"] in states:
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"Job {job_id} stuck in {job['state']}")
        time.sleep(0.05)
