"""
Job store tests.
"""

import pytest

from voiceclone.services.signal import QualityReport
from voiceclone.services.store import InMemoryJobStore, JobState, RedisJobStore, VoiceJob


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the job store."""

    def __init__(self):
        self.values = {}
        self.expiry = {}
        self.sorted_sets = {}
        self.closed = False

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def mget(self, keys):
        return [self.values.get(k) for k in keys]

    async def zadd(self, key, mapping):
        self.sorted_sets.setdefault(key, {}).update(mapping)

    async def zrem(self, key, member):
        self.sorted_sets.get(key, {}).pop(member, None)

    async def zrevrange(self, key, start, end):
        members = self.sorted_sets.get(key, {})
        return [m for m, _ in sorted(members.items(), key=lambda kv: kv[1], reverse=True)]

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def set(self, *args, **kwargs):
        self.commands.append(self.redis.set(*args, **kwargs))

    def zadd(self, *args, **kwargs):
        self.commands.append(self.redis.zadd(*args, **kwargs))

    async def execute(self):
        for command in self.commands:
            await command
        self.commands = []


def make_job(job_id, user_id="user-1", created_at="2026-01-01T00:00:00+00:00"):
    return VoiceJob(
        id=job_id,
        user_id=user_id,
        name=f"Voice {job_id}",
        recordings=["recordings/a.wav"],
        created_at=created_at,
    )


REPORT = QualityReport(
    duration=3.0,
    sample_rate=16000,
    channels=1,
    rms=0.005,
    peak=0.005,
    is_silent=True,
    is_clipped=False,
    score=5,
    issues=["Recording too short"],
    recommendations=["Record for at least 5 seconds"],
)


@pytest.fixture(params=["memory", "redis"])
async def store(request):
    if request.param == "memory":
        job_store = InMemoryJobStore()
    else:
        job_store = RedisJobStore(client=FakeRedis())
    await job_store.initialize()
    yield job_store
    await job_store.shutdown()


class TestJobStore:

    async def test_save_and_get(self, store):
        job = make_job("a")
        job.state = JobState.TRAINING
        job.progress = 50
        await store.save(job)

        loaded = await store.get("a")
        assert loaded == job
        assert loaded is not job

    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    async def test_list_newest_first(self, store):
        await store.save(make_job("old", created_at="2026-01-01T00:00:00+00:00"))
        await store.save(make_job("new", created_at="2026-02-01T00:00:00+00:00"))
        await store.save(make_job("other", user_id="user-2", created_at="2026-03-01T00:00:00+00:00"))

        assert [j.id for j in await store.list()] == ["other", "new", "old"]
        assert [j.id for j in await store.list(user_id="user-1")] == ["new", "old"]

    async def test_quality_round_trip(self, store):
        assert await store.get_quality("a") is None
        await store.save_quality("a", REPORT)
        assert await store.get_quality("a") == REPORT


class TestRedisJobStore:

    async def test_keys_and_ttl(self):
        redis = FakeRedis()
        store = RedisJobStore(client=redis, prefix="test:", ttl_seconds=60)
        await store.initialize()
        await store.save(make_job("a"))

        assert "test:job:a" in redis.values
        assert redis.expiry["test:job:a"] == 60
        assert "a" in redis.sorted_sets["test:user:user-1:jobs"]

        await store.shutdown()
        assert redis.closed

    async def test_expired_records_dropped_from_index(self):
        redis = FakeRedis()
        store = RedisJobStore(client=redis)
        await store.save(make_job("a"))
        await store.save(make_job("b", created_at="2026-01-02T00:00:00+00:00"))
        del redis.values["voiceclone:job:a"]

        assert [j.id for j in await store.list()] == ["b"]
        assert "a" not in redis.sorted_sets["voiceclone:jobs"]


def test_job_dict_round_trip():
    job = make_job("a")
    data = job.to_dict()
    data["stage"] = "Waiting in queue"

    assert data["state"] == "pending"
    assert VoiceJob.from_dict(data) == job
