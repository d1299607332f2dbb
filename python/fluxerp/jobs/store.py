"""Job store implementations."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from fluxerp.errors import StoreUnavailableError
from fluxerp.jobs.models import Job, JobStatus, QueueName, utcnow
from fluxerp.logging import get_logger
from fluxerp.store.redis import translate_errors

logger = get_logger(__name__)


def _ms(moment: datetime) -> float:
    return moment.timestamp() * 1000


class JobStore(ABC):
    """
    Abstract job store interface.

    Holds job records plus per-queue indexes: pending (ready to run, ordered
    by priority then age), delayed (waiting for a retry backoff), active, and
    completed/failed (ordered by finish time). Redis-backed stores raise
    StoreUnavailableError when Redis cannot be reached.
    """

    def __init__(self, retention: timedelta = timedelta(hours=24)) -> None:
        self._retention = retention

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity without raising."""
        pass

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Persist a new pending job and index it for dispatch."""
        pass

    @abstractmethod
    async def get(self, queue_name: QueueName, job_id: str) -> Job | None:
        """Get a job by ID."""
        pass

    @abstractmethod
    async def save(self, job: Job) -> Job:
        """Persist the job record without touching the indexes."""
        pass

    @abstractmethod
    async def claim(self, queue_name: QueueName, now: datetime | None = None) -> Job | None:
        """
        Take the next runnable job off the pending index and mark it active.

        Delayed jobs whose backoff has elapsed are promoted first. The caller
        updates and saves the returned record.
        """
        pass

    @abstractmethod
    async def release(self, job: Job, available_at: datetime | None = None) -> None:
        """Move an active job back to pending, delayed until available_at if given."""
        pass

    @abstractmethod
    async def finish(self, job: Job) -> None:
        """Move an active job to its terminal index; the record expires after retention."""
        pass

    @abstractmethod
    async def list_ids(self, queue_name: QueueName, status: str, limit: int) -> list[str]:
        """List job IDs in one index (pending, delayed, active, completed, failed)."""
        pass

    @abstractmethod
    async def counts(self, queue_name: QueueName) -> dict[str, int]:
        """Count jobs per index."""
        pass

    @abstractmethod
    async def remove(self, queue_name: QueueName, job_id: str) -> bool:
        """Delete a job and drop it from every index."""
        pass

    @abstractmethod
    async def ids_before(self, queue_name: QueueName, index: str, cutoff: datetime) -> list[str]:
        """IDs in an index whose score (claim or finish time) is at or before cutoff."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass

    async def list_jobs(
        self,
        queue_name: QueueName,
        status: str,
        limit: int = 20,
    ) -> list[Job]:
        """Fetch job records for one index, skipping evicted ones."""
        jobs = []
        for job_id in await self.list_ids(queue_name, status, limit):
            job = await self.get(queue_name, job_id)
            if job:
                jobs.append(job)
        return jobs


class MemoryJobStore(JobStore):
    """
    In-memory job store for development and tests.

    Note: Jobs are lost on restart. For production, use Redis.
    """

    INDEXES = ("pending", "delayed", "active", "completed", "failed")

    def __init__(
        self,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(retention)
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._expires: dict[str, datetime] = {}
        self._indexes: dict[QueueName, dict[str, dict[str, float]]] = {}
        logger.info("MemoryJobStore initialized")

    def _index(self, queue_name: QueueName, name: str) -> dict[str, float]:
        queue = self._indexes.setdefault(
            QueueName(queue_name), {index: {} for index in self.INDEXES}
        )
        return queue[name]

    def _drop_from_indexes(self, queue_name: QueueName, job_id: str) -> None:
        for name in self.INDEXES:
            self._index(queue_name, name).pop(job_id, None)

    def _evict_expired(self) -> None:
        now = self._clock()
        for job_id, expires_at in list(self._expires.items()):
            if expires_at <= now:
                job = self._jobs.pop(job_id, None)
                del self._expires[job_id]
                if job:
                    self._drop_from_indexes(job.queue_name, job_id)

    async def ping(self) -> bool:
        return True

    async def add(self, job: Job) -> Job:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._index(job.queue_name, "pending")[job.id] = job.order_score
        return job

    async def get(self, queue_name: QueueName, job_id: str) -> Job | None:
        self._evict_expired()
        job = self._jobs.get(job_id)
        if job is None or job.queue_name != queue_name:
            return None
        return job.model_copy(deep=True)

    async def save(self, job: Job) -> Job:
        if job.id in self._jobs:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def claim(self, queue_name: QueueName, now: datetime | None = None) -> Job | None:
        self._evict_expired()
        now_ms = _ms(now or self._clock())

        delayed = self._index(queue_name, "delayed")
        pending = self._index(queue_name, "pending")
        for job_id, due_ms in list(delayed.items()):
            if due_ms <= now_ms:
                del delayed[job_id]
                job = self._jobs.get(job_id)
                if job:
                    pending[job_id] = job.order_score

        while pending:
            job_id = min(pending, key=pending.__getitem__)
            del pending[job_id]
            job = self._jobs.get(job_id)
            if job is None:
                continue
            self._index(queue_name, "active")[job_id] = now_ms
            return job.model_copy(deep=True)
        return None

    async def release(self, job: Job, available_at: datetime | None = None) -> None:
        self._drop_from_indexes(job.queue_name, job.id)
        self._jobs[job.id] = job.model_copy(deep=True)
        if available_at is not None and available_at > self._clock():
            self._index(job.queue_name, "delayed")[job.id] = _ms(available_at)
        else:
            self._index(job.queue_name, "pending")[job.id] = job.order_score

    async def finish(self, job: Job) -> None:
        self._drop_from_indexes(job.queue_name, job.id)
        self._jobs[job.id] = job.model_copy(deep=True)
        finished_at = job.finished_at or self._clock()
        self._index(job.queue_name, JobStatus(job.status).value)[job.id] = _ms(finished_at)
        self._expires[job.id] = finished_at + self._retention

    async def list_ids(self, queue_name: QueueName, status: str, limit: int) -> list[str]:
        self._evict_expired()
        index = self._index(queue_name, status)
        reverse = status in ("completed", "failed")
        ordered = sorted(index, key=index.__getitem__, reverse=reverse)
        return ordered[:limit]

    async def counts(self, queue_name: QueueName) -> dict[str, int]:
        self._evict_expired()
        return {name: len(self._index(queue_name, name)) for name in self.INDEXES}

    async def remove(self, queue_name: QueueName, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.queue_name != queue_name:
            return False
        del self._jobs[job_id]
        self._expires.pop(job_id, None)
        self._drop_from_indexes(queue_name, job_id)
        return True

    async def ids_before(self, queue_name: QueueName, index: str, cutoff: datetime) -> list[str]:
        self._evict_expired()
        cutoff_ms = _ms(cutoff)
        entries = self._index(queue_name, index)
        return [job_id for job_id, score in entries.items() if score <= cutoff_ms]

    async def close(self) -> None:
        self._jobs.clear()
        self._expires.clear()
        self._indexes.clear()


# Pops the lowest-scored pending job and records it as active in one step.
CLAIM_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
redis.call('ZADD', KEYS[2], ARGV[1], popped[1])
return popped[1]
"""


class RedisJobStore(JobStore):
    """
    Redis-backed job store for production.

    Job records are JSON strings; indexes are sorted sets per queue. Pending
    and active records have no TTL; terminal records expire after the
    retention window.
    """

    KEY_PREFIX = "fluxerp:queue:"

    def __init__(
        self,
        redis_client: redis.Redis,
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        super().__init__(retention)
        self._client = redis_client
        self._claim = redis_client.register_script(CLAIM_SCRIPT)
        logger.info("RedisJobStore initialized", retention_hours=retention.total_seconds() / 3600)

    def _job_key(self, queue_name: QueueName, job_id: str) -> str:
        """Build Redis key for a job."""
        return f"{self.KEY_PREFIX}{QueueName(queue_name).value}:job:{job_id}"

    def _index_key(self, queue_name: QueueName, index: str) -> str:
        """Build Redis key for a queue index."""
        return f"{self.KEY_PREFIX}{QueueName(queue_name).value}:{index}"

    async def ping(self) -> bool:
        try:
            with translate_errors("ping"):
                await self._client.ping()
            return True
        except StoreUnavailableError as e:
            logger.warning("Job store ping failed", error=str(e))
            return False

    async def add(self, job: Job) -> Job:
        with translate_errors("add job"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.queue_name, job.id), job.model_dump_json())
                pipe.zadd(self._index_key(job.queue_name, "pending"), {job.id: job.order_score})
                await pipe.execute()
        return job

    async def get(self, queue_name: QueueName, job_id: str) -> Job | None:
        with translate_errors("get job"):
            job_data = await self._client.get(self._job_key(queue_name, job_id))
        if not job_data:
            return None
        try:
            return Job.model_validate_json(job_data)
        except PydanticValidationError as e:
            logger.error("Corrupt job record", job_id=job_id, error=str(e))
            return None

    async def save(self, job: Job) -> Job:
        with translate_errors("save job"):
            # KEEPTTL preserves the retention expiry of terminal records
            await self._client.set(
                self._job_key(job.queue_name, job.id),
                job.model_dump_json(),
                keepttl=True,
            )
        return job

    async def _promote_delayed(self, queue_name: QueueName, now_ms: float) -> None:
        delayed_key = self._index_key(queue_name, "delayed")
        due = await self._client.zrangebyscore(delayed_key, "-inf", now_ms)
        for job_id in due:
            # Only the caller that removes the entry promotes it
            if not await self._client.zrem(delayed_key, job_id):
                continue
            job = await self.get(queue_name, job_id)
            if job:
                await self._client.zadd(
                    self._index_key(queue_name, "pending"),
                    {job_id: job.order_score},
                )

    async def claim(self, queue_name: QueueName, now: datetime | None = None) -> Job | None:
        now_ms = _ms(now or utcnow())
        with translate_errors("claim job"):
            await self._promote_delayed(queue_name, now_ms)
            while True:
                job_id = await self._claim(
                    keys=[
                        self._index_key(queue_name, "pending"),
                        self._index_key(queue_name, "active"),
                    ],
                    args=[now_ms],
                )
                if not job_id:
                    return None
                job = await self.get(queue_name, job_id)
                if job:
                    return job
                await self._client.zrem(self._index_key(queue_name, "active"), job_id)

    async def release(self, job: Job, available_at: datetime | None = None) -> None:
        with translate_errors("release job"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.queue_name, job.id), job.model_dump_json())
                pipe.zrem(self._index_key(job.queue_name, "active"), job.id)
                if available_at is not None and available_at > utcnow():
                    pipe.zadd(
                        self._index_key(job.queue_name, "delayed"),
                        {job.id: _ms(available_at)},
                    )
                else:
                    pipe.zadd(
                        self._index_key(job.queue_name, "pending"),
                        {job.id: job.order_score},
                    )
                await pipe.execute()

    async def finish(self, job: Job) -> None:
        finished_at = job.finished_at or utcnow()
        with translate_errors("finish job"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.setex(
                    self._job_key(job.queue_name, job.id),
                    int(self._retention.total_seconds()),
                    job.model_dump_json(),
                )
                pipe.zrem(self._index_key(job.queue_name, "active"), job.id)
                pipe.zadd(
                    self._index_key(job.queue_name, JobStatus(job.status).value),
                    {job.id: _ms(finished_at)},
                )
                await pipe.execute()

    async def list_ids(self, queue_name: QueueName, status: str, limit: int) -> list[str]:
        key = self._index_key(queue_name, status)
        with translate_errors("list jobs"):
            if status in ("completed", "failed"):
                return await self._client.zrevrange(key, 0, limit - 1)
            return await self._client.zrange(key, 0, limit - 1)

    async def list_jobs(
        self,
        queue_name: QueueName,
        status: str,
        limit: int = 20,
    ) -> list[Job]:
        jobs = []
        for job_id in await self.list_ids(queue_name, status, limit):
            job = await self.get(queue_name, job_id)
            if job:
                jobs.append(job)
            else:
                # Record expired after retention; drop the dangling index entry
                with translate_errors("list jobs"):
                    await self._client.zrem(self._index_key(queue_name, status), job_id)
        return jobs

    async def counts(self, queue_name: QueueName) -> dict[str, int]:
        with translate_errors("count jobs"):
            async with self._client.pipeline(transaction=False) as pipe:
                for name in MemoryJobStore.INDEXES:
                    pipe.zcard(self._index_key(queue_name, name))
                values = await pipe.execute()
        return dict(zip(MemoryJobStore.INDEXES, values))

    async def remove(self, queue_name: QueueName, job_id: str) -> bool:
        with translate_errors("remove job"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self._job_key(queue_name, job_id))
                for name in MemoryJobStore.INDEXES:
                    pipe.zrem(self._index_key(queue_name, name), job_id)
                results = await pipe.execute()
        return bool(results[0])

    async def ids_before(self, queue_name: QueueName, index: str, cutoff: datetime) -> list[str]:
        with translate_errors("scan index"):
            return await self._client.zrangebyscore(
                self._index_key(queue_name, index),
                "-inf",
                _ms(cutoff),
            )

    async def close(self) -> None:
        # The client is shared with the key-value store, which closes it
        pass
