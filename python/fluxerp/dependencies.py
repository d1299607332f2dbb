"""Service container and shared FastAPI dependencies."""

from datetime import timedelta
from email.message import EmailMessage
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Request

from fluxerp.cache import CacheService
from fluxerp.config import Settings
from fluxerp.jobs.email import EmailService
from fluxerp.jobs.handlers import JobHandlers
from fluxerp.jobs.queue import JobQueue
from fluxerp.jobs.store import JobStore, MemoryJobStore, RedisJobStore
from fluxerp.jobs.workers import WorkerRegistry
from fluxerp.logging import get_logger
from fluxerp.ratelimit import RateLimitPolicies, RateLimiter, build_policies
from fluxerp.store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore

logger = get_logger(__name__)


class Services:
    """
    Long-lived collaborators of one application instance.

    Built by the application lifespan and reachable from requests through
    request.app.state.services.
    """

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        job_store: JobStore,
        email_service: EmailService | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.job_store = job_store
        self.cache = CacheService(store, default_ttl=settings.cache_default_ttl_seconds)
        self.rate_limiter = RateLimiter(store)
        self.rate_limit_policies: RateLimitPolicies = build_policies(settings)
        self.job_queue = JobQueue(job_store, default_max_attempts=settings.job_max_attempts)
        self.email_service = email_service or EmailService(settings)
        self.handlers = JobHandlers(self.email_service)
        self.workers = WorkerRegistry(job_store, self.handlers, settings)
        self.shutting_down = False

    async def close(self) -> None:
        """Close store connections. Workers must be stopped first."""
        await self.job_store.close()
        await self.store.close()


async def build_services(
    settings: Settings,
    email_transport: Callable[[EmailMessage], Awaitable[None]] | None = None,
) -> Services:
    """
    Build the service container from settings.

    With REDIS_URL set, the cache, rate limiter and job store share one
    Redis client; without it everything lives in process memory (dev only,
    jobs are lost on restart).
    """
    retention = timedelta(hours=settings.job_retention_hours)
    email_service = EmailService(settings, transport=email_transport)

    if settings.redis_url:
        store = await RedisKeyValueStore.create(
            settings.redis_url, settings.redis_connect_timeout_seconds
        )
        job_store: JobStore = RedisJobStore(store.client, retention=retention)
        logger.info("Using Redis stores")
    else:
        store = MemoryKeyValueStore()
        job_store = MemoryJobStore(retention=retention)
        if settings.is_production:
            logger.warning("REDIS_URL not set in production - jobs will not survive restarts")
        else:
            logger.info("Using in-memory stores")

    return Services(settings, store, job_store, email_service=email_service)


def get_services(request: Request) -> Services:
    """Get the service container of the running application."""
    return request.app.state.services


def get_cache(services: Annotated[Services, Depends(get_services)]) -> CacheService:
    return services.cache


def get_job_queue(services: Annotated[Services, Depends(get_services)]) -> JobQueue:
    return services.job_queue


# Type aliases for cleaner dependency injection
ServicesDep = Annotated[Services, Depends(get_services)]
CacheDep = Annotated[CacheService, Depends(get_cache)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
