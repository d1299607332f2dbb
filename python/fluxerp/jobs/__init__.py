"""Job system for background task processing."""

from fluxerp.jobs.models import Job, JobOptions, JobPriority, JobStatus, QueueName, QueueStats
from fluxerp.jobs.pool import JobContext, ThroughputLimit, WorkerPool
from fluxerp.jobs.queue import JobQueue
from fluxerp.jobs.store import JobStore, MemoryJobStore, RedisJobStore
from fluxerp.jobs.workers import WorkerRegistry

__all__ = [
    "Job",
    "JobContext",
    "JobOptions",
    "JobPriority",
    "JobQueue",
    "JobStatus",
    "JobStore",
    "MemoryJobStore",
    "QueueName",
    "QueueStats",
    "RedisJobStore",
    "ThroughputLimit",
    "WorkerPool",
    "WorkerRegistry",
]
