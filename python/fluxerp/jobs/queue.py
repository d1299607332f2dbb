"""Job submission and inspection API."""

import uuid
from datetime import timedelta
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from fluxerp.errors import (
    BadRequestError,
    NotFoundError,
    QueueUnavailableError,
    StoreUnavailableError,
    ValidationError,
)
from fluxerp.jobs.models import (
    JOB_NAME_PREFIXES,
    PAYLOAD_MODELS,
    TERMINAL_STATUSES,
    AIAnalysisJobData,
    EmailJobData,
    Job,
    JobOptions,
    JobPriority,
    JobStatus,
    NotificationJobData,
    QueueName,
    QueueStats,
    ReportJobData,
    utcnow,
)
from fluxerp.jobs.store import JobStore
from fluxerp.logging import get_logger

logger = get_logger(__name__)

LIST_STATUSES = ("pending", "delayed", "active", "completed", "failed")

EMAIL_PRIORITIES = {
    "high": JobPriority.HIGH,
    "normal": JobPriority.NORMAL,
    "low": JobPriority.LOW,
}


def parse_queue_name(value: str) -> QueueName:
    """Resolve a queue name from user input."""
    try:
        return QueueName(value)
    except ValueError:
        raise BadRequestError(f"Invalid queue name: {value}") from None


def validate_payload(queue_name: QueueName, payload: BaseModel | dict[str, Any]) -> BaseModel:
    """Validate a payload against the queue's payload model."""
    model = PAYLOAD_MODELS[QueueName(queue_name)]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid payload for queue {QueueName(queue_name).value}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


class JobQueue:
    """
    Typed, durable job submission.

    Submitting never waits for execution. Store failures raise
    QueueUnavailableError; the caller decides whether the deferred work is
    essential.
    """

    def __init__(self, store: JobStore, default_max_attempts: int = 3) -> None:
        self._store = store
        self._default_max_attempts = default_max_attempts

    @property
    def store(self) -> JobStore:
        return self._store

    async def submit(
        self,
        queue_name: QueueName,
        payload: BaseModel | dict[str, Any],
        options: JobOptions | None = None,
    ) -> str:
        """
        Submit a job and return its ID.

        Raises:
            ValidationError: payload does not match the queue's payload model
            QueueUnavailableError: the job store is unreachable
        """
        queue_name = QueueName(queue_name)
        options = options or JobOptions()
        data = validate_payload(queue_name, payload)
        job_type = getattr(data, "type", None)
        type_value = getattr(job_type, "value", job_type)

        job = Job(
            id=str(uuid.uuid4()),
            queue_name=queue_name,
            name=f"{JOB_NAME_PREFIXES[queue_name]}:{type_value}",
            payload=data.model_dump(mode="json"),
            max_attempts=options.max_attempts or self._default_max_attempts,
            priority=options.priority,
            dedup_key=options.dedup_key,
        )

        try:
            await self._store.add(job)
        except StoreUnavailableError as e:
            logger.error(
                "Job submission failed",
                queue=queue_name.value,
                name=job.name,
                error=str(e),
            )
            raise QueueUnavailableError(f"Queue {queue_name.value} is unavailable") from e

        logger.info(
            "Job submitted",
            job_id=job.id,
            queue=queue_name.value,
            name=job.name,
            priority=job.priority,
            max_attempts=job.max_attempts,
        )
        return job.id

    # -------------------------------------------------------------------------
    # Typed helpers
    # -------------------------------------------------------------------------

    async def queue_email(self, data: EmailJobData | dict[str, Any], priority: str = "normal") -> str:
        """Queue an email; priority is high, normal or low."""
        return await self.submit(
            QueueName.EMAIL,
            data,
            JobOptions(priority=EMAIL_PRIORITIES.get(priority, JobPriority.NORMAL)),
        )

    async def queue_ai_analysis(self, data: AIAnalysisJobData | dict[str, Any]) -> str:
        return await self.submit(QueueName.AI_ANALYSIS, data, JobOptions(priority=JobPriority.NORMAL))

    async def queue_report(self, data: ReportJobData | dict[str, Any]) -> str:
        return await self.submit(QueueName.REPORTS, data, JobOptions(priority=JobPriority.LOW))

    async def queue_notification(self, data: NotificationJobData | dict[str, Any]) -> str:
        return await self.submit(
            QueueName.NOTIFICATIONS, data, JobOptions(priority=JobPriority.NOTIFICATION)
        )

    # -------------------------------------------------------------------------
    # Inspection and maintenance
    # -------------------------------------------------------------------------

    async def get_job(self, queue_name: QueueName, job_id: str) -> Job | None:
        """Get a job by ID."""
        try:
            return await self._store.get(queue_name, job_id)
        except StoreUnavailableError as e:
            raise QueueUnavailableError() from e

    async def list_jobs(
        self,
        queue_name: QueueName,
        status: str | None = None,
        limit: int = 20,
    ) -> list[Job]:
        """
        List jobs in a queue.

        Without a status, returns a sample across pending, active, completed
        and failed (limit split evenly), like the monitoring panel expects.
        """
        if status is not None and status not in LIST_STATUSES:
            raise BadRequestError(f"Invalid job status: {status}")

        try:
            if status is not None:
                return await self._store.list_jobs(queue_name, status, limit)

            per_status = max(1, limit // 4)
            jobs: list[Job] = []
            for name in ("pending", "active", "completed", "failed"):
                jobs.extend(await self._store.list_jobs(queue_name, name, per_status))
            return jobs
        except StoreUnavailableError as e:
            raise QueueUnavailableError() from e

    async def get_stats(self, queue_name: QueueName) -> QueueStats:
        """Count jobs per status; zeros when the store is unreachable."""
        queue_name = QueueName(queue_name)
        try:
            counts = await self._store.counts(queue_name)
        except StoreUnavailableError as e:
            logger.warning("Queue stats unavailable", queue=queue_name.value, error=str(e))
            return QueueStats(name=queue_name.value, store_available=False)

        return QueueStats(name=queue_name.value, total=sum(counts.values()), **counts)

    async def get_all_stats(self) -> list[QueueStats]:
        return [await self.get_stats(name) for name in QueueName]

    async def retry_failed(self, queue_name: QueueName, job_id: str) -> str:
        """
        Resubmit a failed job as a new job.

        The failed record stays terminal; the new job starts from attempt 0
        and keeps a reference to the original.
        """
        job = await self.get_job(queue_name, job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if job.status != JobStatus.FAILED:
            raise BadRequestError(f"Only failed jobs can be retried (status is {job.status})")

        retry = Job(
            id=str(uuid.uuid4()),
            queue_name=job.queue_name,
            name=job.name,
            payload=job.payload,
            max_attempts=job.max_attempts,
            priority=job.priority,
            dedup_key=job.dedup_key,
            retry_of=job.id,
        )
        try:
            await self._store.add(retry)
        except StoreUnavailableError as e:
            raise QueueUnavailableError() from e

        logger.info("Failed job resubmitted", job_id=retry.id, retry_of=job.id, queue=job.queue_name)
        return retry.id

    async def clean(
        self,
        queue_name: QueueName,
        grace_ms: int = 3_600_000,
        status: JobStatus = JobStatus.COMPLETED,
    ) -> int:
        """Remove terminal jobs that finished more than grace_ms ago."""
        if status not in TERMINAL_STATUSES:
            raise BadRequestError("Only completed or failed jobs can be cleaned")

        cutoff = utcnow() - timedelta(milliseconds=grace_ms)
        try:
            job_ids = await self._store.ids_before(queue_name, JobStatus(status).value, cutoff)
            removed = 0
            for job_id in job_ids:
                if await self._store.remove(queue_name, job_id):
                    removed += 1
        except StoreUnavailableError as e:
            raise QueueUnavailableError() from e

        logger.info("Queue cleaned", queue=QueueName(queue_name).value, status=status, removed=removed)
        return removed
