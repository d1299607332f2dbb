"""
Pytest configuration and shared fixtures.

Everything runs against the in-memory stores; the broken stores stand in
for an unreachable Redis.
"""

from datetime import datetime, timedelta

import pytest

from fluxerp.config import Settings
from fluxerp.errors import StoreUnavailableError
from fluxerp.jobs.models import Job, QueueName
from fluxerp.jobs.queue import JobQueue
from fluxerp.jobs.store import JobStore, MemoryJobStore
from fluxerp.store import KeyValueStore, MemoryKeyValueStore


# ============================================================================
# Clocks
# ============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Unreachable stores
# ============================================================================


class BrokenKeyValueStore(KeyValueStore):
    """Key-value store whose backend is always down."""

    async def get(self, key):
        raise StoreUnavailableError("connection refused")

    async def set(self, key, value, ttl_seconds=None):
        raise StoreUnavailableError("connection refused")

    async def delete(self, *keys):
        raise StoreUnavailableError("connection refused")

    async def keys(self, pattern):
        raise StoreUnavailableError("connection refused")

    async def incr_window(self, key, window_ms):
        raise StoreUnavailableError("connection refused")

    async def ping(self):
        return False

    async def close(self):
        pass


class BrokenJobStore(JobStore):
    """Job store whose backend is always down."""

    async def ping(self):
        return False

    async def add(self, job):
        raise StoreUnavailableError("connection refused")

    async def get(self, queue_name, job_id):
        raise StoreUnavailableError("connection refused")

    async def save(self, job):
        raise StoreUnavailableError("connection refused")

    async def claim(self, queue_name, now=None):
        raise StoreUnavailableError("connection refused")

    async def release(self, job, available_at=None):
        raise StoreUnavailableError("connection refused")

    async def finish(self, job):
        raise StoreUnavailableError("connection refused")

    async def list_ids(self, queue_name, status, limit):
        raise StoreUnavailableError("connection refused")

    async def counts(self, queue_name):
        raise StoreUnavailableError("connection refused")

    async def remove(self, queue_name, job_id):
        raise StoreUnavailableError("connection refused")

    async def ids_before(self, queue_name, index, cutoff):
        raise StoreUnavailableError("connection refused")

    async def close(self):
        pass


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with in-memory stores, fast timings and no background workers."""
    return Settings(
        _env_file=None,
        env="dev",
        redis_url=None,
        workers_enabled=False,
        log_format="console",
        job_backoff_base_ms=10,
        job_backoff_max_ms=100,
        worker_poll_interval_ms=10,
        worker_shutdown_timeout_seconds=1,
        smtp_user=None,
        smtp_password=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def broken_kv_store() -> BrokenKeyValueStore:
    return BrokenKeyValueStore()


@pytest.fixture
def job_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def broken_job_store() -> BrokenJobStore:
    return BrokenJobStore()


@pytest.fixture
def job_queue(job_store: MemoryJobStore) -> JobQueue:
    return JobQueue(job_store, default_max_attempts=3)


@pytest.fixture
def notification_payload() -> dict:
    return {
        "type": "in-app",
        "user_id": "user-1",
        "title": "ECO approved",
        "message": "ECO-42 was approved",
    }


async def finish_job(
    store: JobStore,
    queue_name: QueueName,
    job_id: str,
    status: str,
    finished_at: datetime | None = None,
) -> Job:
    """Drive a pending job straight to a terminal state."""
    job = await store.claim(queue_name)
    assert job is not None and job.id == job_id
    job.status = status
    job.attempt = job.max_attempts if status == "failed" else 1
    finished_at = finished_at or datetime.now().astimezone()
    if status == "failed":
        job.failed_at = finished_at
        job.last_error = "boom"
    else:
        job.completed_at = finished_at
    await store.finish(job)
    return job


def hours_ago(hours: float) -> datetime:
    return datetime.now().astimezone() - timedelta(hours=hours)
