"""
Jobs client and poller tests against a mocked transport.
"""

import asyncio
import json

import httpx
import pytest

from voiceclone.client import JobPoller, JobsClient
from voiceclone.core.errors import VoiceCloneError
from voiceclone.services.backoff import BackoffPolicy
from voiceclone.services.store import JobState, VoiceJob


def job_dict(job_id, state="pending", progress=0, error=None, user_id="user-1"):
    job = VoiceJob(
        id=job_id,
        user_id=user_id,
        name=f"Voice {job_id}",
        recordings=["recordings/a.wav"],
        state=JobState(state),
        progress=progress,
        error=error,
    )
    data = job.to_dict()
    data["stage"] = job.stage
    return data


class FakeServer:
    """Serves a mutable job list the way the API does."""

    def __init__(self):
        self.jobs = {}
        self.requests = []
        self.fail_next = 0

    def set(self, job_id, **kwargs):
        self.jobs[job_id] = job_dict(job_id, **kwargs)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            self.fail_next -= 1
            raise httpx.ConnectError("connection refused")

        path = request.url.path
        if request.method == "GET" and path == "/v1/voice-jobs":
            user_id = request.url.params.get("user_id")
            jobs = [j for j in self.jobs.values() if not user_id or j["user_id"] == user_id]
            return httpx.Response(200, json={"jobs": jobs, "total": len(jobs)})

        if request.method == "POST" and path == "/v1/voice-jobs":
            self.set("new")
            return httpx.Response(201, json=self.jobs["new"])

        job_id = path.split("/")[3]
        if job_id not in self.jobs:
            return httpx.Response(404, json={
                "error": {"code": "NOT_FOUND", "message": "voice_job not found", "details": {"id": job_id}},
            })

        if path.endswith("/cancel"):
            if self.jobs[job_id]["state"] in ("finalizing", "completed", "failed"):
                return httpx.Response(409, json={
                    "error": {"code": "INVALID_TRANSITION", "message": "cannot cancel", "details": {}},
                })
            reason = json.loads(request.content)["reason"] if request.content else "Cancelled by user"
            self.set(job_id, state="failed", error=reason)
        elif path.endswith("/retry"):
            self.set(job_id, state="pending")
        return httpx.Response(200, json=self.jobs[job_id])


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
async def jobs_client(server):
    client = JobsClient(
        api_url="http://voiceclone.test",
        backoff=BackoffPolicy(max_attempts=3, base_delay=0.0),
        transport=httpx.MockTransport(server),
    )
    yield client
    await client.close()


class TestJobsClient:

    async def test_create_uploads_recordings(self, jobs_client, server):
        job = await jobs_client.create_job("My voice", "user-1", [("take1.wav", b"RIFF....")])

        assert job.id == "new"
        body = server.requests[-1].read()
        assert b'name="recordings"' in body
        assert b"take1.wav" in body

    async def test_get_and_list(self, jobs_client, server):
        server.set("a", state="training", progress=50)
        server.set("b", user_id="user-2")

        job = await jobs_client.get_job("a")
        assert job.state == JobState.TRAINING
        assert job.progress == 50
        assert [j.id for j in await jobs_client.list_jobs(user_id="user-2")] == ["b"]

    async def test_cancel_with_reason(self, jobs_client, server):
        server.set("a", state="uploading")
        job = await jobs_client.cancel_job("a", "Wrong mic")
        assert job.state == JobState.FAILED
        assert job.error == "Wrong mic"

    async def test_error_envelope_raised(self, jobs_client, server):
        server.set("a", state="completed", progress=100)
        with pytest.raises(VoiceCloneError) as exc_info:
            await jobs_client.cancel_job("a")

        assert exc_info.value.code == "INVALID_TRANSITION"
        assert exc_info.value.status_code == 409

        with pytest.raises(VoiceCloneError) as exc_info:
            await jobs_client.get_job("missing")
        assert exc_info.value.code == "NOT_FOUND"

    async def test_transport_errors_retried(self, jobs_client, server):
        server.set("a")
        server.fail_next = 2
        assert (await jobs_client.get_job("a")).id == "a"
        assert len(server.requests) == 3


class TestJobPoller:

    async def test_polling_enabled_only_with_outstanding_jobs(self, jobs_client, server):
        poller = JobPoller(jobs_client, interval=0.01)
        assert not poller.polling_enabled

        server.set("a", state="completed", progress=100)
        await poller.refresh()
        assert not poller.polling_enabled

        server.set("b", state="finalizing", progress=95)
        await poller.refresh()
        assert poller.polling_enabled

    async def test_track_enables_polling(self, jobs_client):
        poller = JobPoller(jobs_client)
        poller.track(VoiceJob.from_dict(job_dict("a")))
        assert poller.polling_enabled

    async def test_refresh_replaces_view(self, jobs_client, server):
        poller = JobPoller(jobs_client)
        poller.track(VoiceJob.from_dict(job_dict("local-only")))
        server.set("a", state="training", progress=50)

        await poller.refresh()
        assert list(poller.jobs) == ["a"]
        assert poller.jobs["a"].progress == 50

    async def test_terminal_notification(self, jobs_client, server):
        finished = []
        updates = []
        poller = JobPoller(jobs_client, on_terminal=finished.append, on_update=updates.append)

        server.set("a", state="validating", progress=80)
        server.set("b", state="failed", error="old failure")
        await poller.refresh()
        assert finished == []

        server.set("a", state="completed", progress=100)
        await poller.refresh()
        assert [j.id for j in finished] == ["a"]
        assert len(updates) == 4

    async def test_async_callbacks(self, jobs_client, server):
        finished = []

        async def on_terminal(job):
            finished.append(job.id)

        poller = JobPoller(jobs_client, on_terminal=on_terminal)
        server.set("a", state="training")
        await poller.refresh()
        server.set("a", state="failed", error="GPU quota exceeded")
        await poller.refresh()
        assert finished == ["a"]

    async def test_background_loop_stops_when_idle(self, jobs_client, server):
        finished = asyncio.Event()
        poller = JobPoller(jobs_client, interval=0.01, on_terminal=lambda job: finished.set())
        server.set("a", state="training", progress=50)
        await poller.refresh()

        await poller.start()
        assert poller.is_polling
        server.set("a", state="completed", progress=100)
        await asyncio.wait_for(finished.wait(), timeout=2)

        assert not poller.polling_enabled
        assert not poller.is_polling
        calls = len(server.requests)
        await asyncio.sleep(0.05)
        assert len(server.requests) == calls
        await poller.stop()

    async def test_paused_in_background(self, jobs_client, server):
        poller = JobPoller(jobs_client, interval=0.01)
        server.set("a", state="training", progress=50)
        await poller.refresh()

        poller.set_foreground(False)
        await poller.start()
        calls = len(server.requests)
        await asyncio.sleep(0.05)
        assert len(server.requests) == calls
        assert not poller.is_polling

        poller.set_foreground(True)
        await asyncio.sleep(0.05)
        assert len(server.requests) > calls
        await poller.stop()

    async def test_refresh_failure_retried_next_tick(self, jobs_client, server):
        poller = JobPoller(jobs_client, interval=0.01)
        server.set("a", state="training", progress=50)
        await poller.refresh()

        server.fail_next = 10
        await poller.start()
        await asyncio.sleep(0.2)
        server.set("a", state="completed", progress=100)
        await asyncio.sleep(0.2)

        assert poller.jobs["a"].state == JobState.COMPLETED
        await poller.stop()
