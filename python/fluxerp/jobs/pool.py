"""Worker pool for executing queued jobs with retry and backoff."""

import asyncio
import inspect
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from fluxerp.errors import JobHandlerError, JobTimeoutError, StoreUnavailableError
from fluxerp.jobs.models import Job, JobStatus, QueueName, utcnow
from fluxerp.jobs.store import JobStore
from fluxerp.logging import get_logger, job_context

logger = get_logger(__name__)

EVENTS = ("completed", "failed", "retrying")


def calculate_retry_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> float:
    """
    Calculate exponential backoff delay for retry.

    Args:
        attempt: Attempt that just failed (1-based)
        base_delay: Base delay
        max_delay: Maximum delay cap
        multiplier: Backoff multiplier

    Returns:
        Delay before the next attempt, in the unit of base_delay
    """
    delay = base_delay * (multiplier ** (max(attempt, 1) - 1))
    return min(delay, max_delay)


class JobContext:
    """What a handler sees of the job it is running."""

    def __init__(self, job: Job, store: JobStore) -> None:
        self.job = job
        self._store = store

    async def update_progress(self, value: int | float) -> int:
        """
        Record progress (clamped to 0..100).

        Progress never goes backwards within an attempt. Store failures are
        logged and do not interrupt the handler.
        """
        value = max(0, min(100, int(value)))
        if value <= self.job.progress:
            return self.job.progress

        self.job.progress = value
        try:
            await self._store.save(self.job)
        except StoreUnavailableError as e:
            logger.warning("Progress update failed", job_id=self.job.id, error=str(e))
        return value


Handler = Callable[[JobContext], Awaitable[Any]]
EventCallback = Callable[[Job], Any]


class ThroughputLimit(BaseModel):
    """At most max_jobs handler starts in any rolling duration_ms window."""

    max_jobs: int = Field(gt=0)
    duration_ms: int = Field(gt=0)


class ThroughputLimiter:
    """Rolling-window counter of handler starts for one pool."""

    def __init__(self, limit: ThroughputLimit, clock: Callable[[], float] | None = None) -> None:
        self.limit = limit
        self._clock = clock or asyncio.get_running_loop().time
        self._starts: deque[float] = deque()

    def _trim(self, now: float) -> None:
        window = self.limit.duration_ms / 1000
        while self._starts and self._starts[0] <= now - window:
            self._starts.popleft()

    def delay(self) -> float:
        """Seconds until another start is allowed; 0 when one is allowed now."""
        now = self._clock()
        self._trim(now)
        if len(self._starts) < self.limit.max_jobs:
            return 0.0
        return max(0.0, self._starts[0] + self.limit.duration_ms / 1000 - now)

    def record(self) -> None:
        self._starts.append(self._clock())


class WorkerPool:
    """
    Runs jobs from one queue with bounded concurrency.

    A dispatcher task claims the next runnable job whenever a slot is free
    and starts one task per job. Failed jobs go back to pending with
    exponential backoff until max_attempts is reached, then fail for good.
    """

    def __init__(
        self,
        queue_name: QueueName,
        handler: Handler,
        store: JobStore,
        concurrency: int = 1,
        rate_limit: ThroughputLimit | None = None,
        *,
        job_timeout: float = 300.0,
        poll_interval: float = 0.5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 300_000,
        shutdown_timeout: float = 30.0,
        stalled_after: timedelta | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.queue_name = QueueName(queue_name)
        self.handler = handler
        self.store = store
        self.concurrency = concurrency
        self.rate_limit = rate_limit
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.shutdown_timeout = shutdown_timeout
        self.stalled_after = stalled_after or timedelta(seconds=job_timeout + 30)

        self._listeners: dict[str, list[EventCallback]] = {event: [] for event in EVENTS}
        self._tasks: dict[asyncio.Task, Job] = {}
        self._settling: set[str] = set()
        self._semaphore: asyncio.Semaphore | None = None
        self._stopping: asyncio.Event | None = None
        self._dispatcher: asyncio.Task | None = None
        self._throughput: ThroughputLimiter | None = None
        self._next_recovery = 0.0

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def on(self, event: str, callback: EventCallback) -> None:
        """Register a callback for completed, failed or retrying; sync or async."""
        if event not in self._listeners:
            raise ValueError(f"Unknown worker event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, job: Job) -> None:
        for callback in self._listeners[event]:
            try:
                outcome = callback(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Worker event callback failed", event=event, job_id=job.id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Recover stalled jobs and start dispatching."""
        if self.is_running:
            return

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._throughput = ThroughputLimiter(self.rate_limit) if self.rate_limit else None

        recovered = await self.recover_stalled()
        self._dispatcher = asyncio.create_task(
            self._dispatch(), name=f"worker-pool:{self.queue_name.value}"
        )
        logger.info(
            "Worker pool started",
            queue=self.queue_name.value,
            concurrency=self.concurrency,
            recovered=recovered,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop claiming and wait for in-flight jobs.

        Jobs still running after the timeout are cancelled and returned to
        pending without consuming an attempt. Returns once every task has
        settled.
        """
        if self._dispatcher is None:
            return

        timeout = self.shutdown_timeout if timeout is None else timeout
        self._stopping.set()

        if self._tasks:
            _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
            cancelled = 0
            for task in still_running:
                if self._tasks.get(task) is not None and self._tasks[task].id not in self._settling:
                    task.cancel()
                    cancelled += 1
            if still_running:
                logger.warning(
                    "Worker pool shutdown timed out",
                    queue=self.queue_name.value,
                    cancelled=cancelled,
                )
                await asyncio.gather(*still_running, return_exceptions=True)

        await self._dispatcher
        self._dispatcher = None
        logger.info("Worker pool stopped", queue=self.queue_name.value)

    async def recover_stalled(self) -> int:
        """
        Return jobs left active by a dead process to pending.

        Only jobs claimed longer ago than stalled_after are touched, so a
        pool starting next to a live one leaves its jobs alone. The attempt
        count is kept. Jobs this pool is still running are skipped.
        """
        cutoff = utcnow() - self.stalled_after
        running = {job.id for job in self._tasks.values()}
        recovered = 0
        for job_id in await self.store.ids_before(self.queue_name, "active", cutoff):
            if job_id in running:
                continue
            job = await self.store.get(self.queue_name, job_id)
            if job is None:
                await self.store.remove(self.queue_name, job_id)
                continue
            job.status = JobStatus.PENDING
            job.progress = 0
            job.started_at = None
            await self.store.release(job)
            recovered += 1
            logger.warning("Recovered stalled job", job_id=job.id, queue=self.queue_name.value)
        return recovered

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early when the pool is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _next_job(self) -> Job | None:
        if self._throughput is not None:
            while (delay := self._throughput.delay()) > 0:
                await self._sleep(delay)
                if self._stopping.is_set():
                    return None

        job = await self.store.claim(self.queue_name)
        if job is None:
            return None

        if self._throughput is not None:
            self._throughput.record()

        job.status = JobStatus.ACTIVE
        job.attempt += 1
        job.progress = 0
        job.started_at = utcnow()
        try:
            await self.store.save(job)
        except StoreUnavailableError:
            await self._requeue(job)
            raise
        return job

    async def _recover_periodically(self, loop: asyncio.AbstractEventLoop) -> None:
        if loop.time() < self._next_recovery:
            return
        self._next_recovery = loop.time() + self.stalled_after.total_seconds() / 2
        try:
            await self.recover_stalled()
        except StoreUnavailableError as e:
            logger.warning("Stalled job recovery failed", queue=self.queue_name.value, error=str(e))

    async def _dispatch(self) -> None:
        loop = asyncio.get_running_loop()
        self._next_recovery = loop.time() + self.stalled_after.total_seconds() / 2
        while not self._stopping.is_set():
            await self._recover_periodically(loop)
            await self._semaphore.acquire()
            if self._stopping.is_set():
                self._semaphore.release()
                break

            try:
                job = await self._next_job()
            except StoreUnavailableError as e:
                self._semaphore.release()
                logger.warning("Job claim failed", queue=self.queue_name.value, error=str(e))
                await self._sleep(self.poll_interval)
                continue
            except asyncio.CancelledError:
                self._semaphore.release()
                raise

            if job is None:
                self._semaphore.release()
                await self._sleep(self.poll_interval)
                continue

            if self._stopping.is_set():
                await self._requeue(job)
                self._semaphore.release()
                break

            task = asyncio.create_task(self._run(job), name=f"job:{job.id}")
            self._tasks[task] = job
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        job = self._tasks.pop(task, None)
        self._semaphore.release()
        if job is not None:
            self._settling.discard(job.id)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Job task crashed",
                queue=self.queue_name.value,
                job_id=job.id if job else None,
                error=str(task.exception()),
            )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _run(self, job: Job) -> None:
        ctx = JobContext(job, self.store)
        with job_context(job.id, self.queue_name.value, job.attempt):
            logger.info("Starting job", name=job.name, max_attempts=job.max_attempts)
            await self._execute(ctx, job)

    async def _execute(self, ctx: JobContext, job: Job) -> None:
        try:
            result = await asyncio.wait_for(self.handler(ctx), timeout=self.job_timeout)
        except asyncio.CancelledError:
            await self._requeue(job)
            raise
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Job exceeded {self.job_timeout}s execution timeout")
            await self._settle(self._fail(ctx.job, error), job)
        except JobHandlerError as e:
            await self._settle(self._fail(ctx.job, e), job)
        except Exception as e:
            await self._settle(self._fail(ctx.job, JobHandlerError(str(e) or type(e).__name__)), job)
        else:
            await self._settle(self._complete(ctx.job, result), job)

    async def _settle(self, outcome: Awaitable[None], job: Job) -> None:
        self._settling.add(job.id)
        try:
            await outcome
        except StoreUnavailableError as e:
            # Job stays active; stalled recovery picks it up.
            logger.error("Job result not recorded", job_id=job.id, error=str(e))

    async def _complete(self, job: Job, result: Any) -> None:
        job.status = JobStatus.COMPLETED
        job.result = result
        job.progress = 100
        job.last_error = None
        job.completed_at = utcnow()
        await self.store.finish(job)

        logger.info(
            "Job completed successfully",
            job_id=job.id,
            queue=self.queue_name.value,
            attempt=job.attempt,
        )
        await self._emit("completed", job)

    async def _fail(self, job: Job, error: JobHandlerError) -> None:
        job.last_error = str(error)[:500]
        can_retry = error.retryable and job.attempt < job.max_attempts

        if can_retry:
            delay_ms = calculate_retry_delay(
                attempt=job.attempt,
                base_delay=self.backoff_base_ms,
                max_delay=self.backoff_max_ms,
            )
            job.status = JobStatus.PENDING
            job.progress = 0
            job.available_at = utcnow() + timedelta(milliseconds=delay_ms)
            await self.store.release(job, available_at=job.available_at)

            logger.info(
                "Job scheduled for retry",
                job_id=job.id,
                queue=self.queue_name.value,
                attempt=job.attempt,
                delay_ms=delay_ms,
                error=job.last_error,
            )
            await self._emit("retrying", job)
            return

        job.status = JobStatus.FAILED
        job.failed_at = utcnow()
        await self.store.finish(job)

        logger.error(
            "Job failed permanently",
            job_id=job.id,
            queue=self.queue_name.value,
            name=job.name,
            attempt=job.attempt,
            retryable=error.retryable,
            error=job.last_error,
        )
        await self._emit("failed", job)

    async def _requeue(self, job: Job) -> None:
        """Return a claimed job to pending without consuming its attempt."""
        job.status = JobStatus.PENDING
        job.attempt = max(0, job.attempt - 1)
        job.progress = 0
        job.started_at = None
        try:
            await self.store.release(job)
        except StoreUnavailableError as e:
            logger.error("Job not requeued", job_id=job.id, error=str(e))
            return
        logger.info("Job requeued", job_id=job.id, queue=self.queue_name.value)
