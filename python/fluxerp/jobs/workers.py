"""Worker pools for the four declared queues."""

from datetime import timedelta

from fluxerp.config import Settings
from fluxerp.errors import StoreUnavailableError
from fluxerp.jobs.handlers import JobHandlers
from fluxerp.jobs.models import QueueName
from fluxerp.jobs.pool import ThroughputLimit, WorkerPool
from fluxerp.jobs.store import JobStore
from fluxerp.logging import get_logger

logger = get_logger(__name__)


def _throughput(max_jobs: int | None, duration_ms: int) -> ThroughputLimit | None:
    if not max_jobs:
        return None
    return ThroughputLimit(max_jobs=max_jobs, duration_ms=duration_ms)


def pool_limits(settings: Settings) -> dict[QueueName, tuple[int, ThroughputLimit | None]]:
    """Concurrency and throughput cap per queue."""
    return {
        QueueName.EMAIL: (
            settings.email_concurrency,
            _throughput(settings.email_rate_max, settings.email_rate_duration_ms),
        ),
        QueueName.AI_ANALYSIS: (
            settings.ai_concurrency,
            _throughput(settings.ai_rate_max, settings.ai_rate_duration_ms),
        ),
        QueueName.REPORTS: (settings.reports_concurrency, None),
        QueueName.NOTIFICATIONS: (settings.notifications_concurrency, None),
    }


class WorkerRegistry:
    """Builds and owns one worker pool per queue."""

    def __init__(self, store: JobStore, handlers: JobHandlers, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.pools: dict[QueueName, WorkerPool] = {}

        for queue_name, (concurrency, rate_limit) in pool_limits(settings).items():
            self.pools[queue_name] = WorkerPool(
                queue_name,
                handlers.for_queue(queue_name),
                store,
                concurrency=concurrency,
                rate_limit=rate_limit,
                job_timeout=settings.job_timeout_seconds,
                poll_interval=settings.worker_poll_interval_ms / 1000,
                backoff_base_ms=settings.job_backoff_base_ms,
                backoff_max_ms=settings.job_backoff_max_ms,
                shutdown_timeout=settings.worker_shutdown_timeout_seconds,
                stalled_after=timedelta(seconds=settings.job_timeout_seconds + 30),
            )

    @property
    def is_running(self) -> bool:
        return any(pool.is_running for pool in self.pools.values())

    def get(self, queue_name: QueueName) -> WorkerPool:
        return self.pools[QueueName(queue_name)]

    async def start(self) -> None:
        """
        Start every pool.

        Raises:
            StoreUnavailableError: the job store is unreachable
        """
        if not await self.store.ping():
            raise StoreUnavailableError("Job store unreachable; workers not started")

        for pool in self.pools.values():
            await pool.start()
        logger.info("Workers started", queues=[q.value for q in self.pools])

    async def stop(self, timeout: float | None = None) -> None:
        """Stop every pool, each within the shutdown timeout."""
        for pool in self.pools.values():
            await pool.stop(timeout)
        logger.info("Workers stopped")
