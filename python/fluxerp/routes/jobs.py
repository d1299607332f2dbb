"""Job monitoring endpoints."""

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from fluxerp.dependencies import JobQueueDep
from fluxerp.errors import NotFoundError
from fluxerp.jobs.models import JobResponse, JobStatus, QueueStats
from fluxerp.jobs.queue import parse_queue_name
from fluxerp.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================


class QueueStatsListResponse(BaseModel):
    """Stats for every queue."""

    queues: list[QueueStats]


class JobListResponse(BaseModel):
    """Response for job list."""

    jobs: list[JobResponse]
    total: int


class RetryJobResponse(BaseModel):
    job_id: str
    retry_of: str


class CleanQueueRequest(BaseModel):
    """Which terminal jobs to remove."""

    grace_ms: int = Field(default=3_600_000, ge=0)
    status: JobStatus = JobStatus.COMPLETED


class CleanQueueResponse(BaseModel):
    queue: str
    status: str
    removed: int


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/stats", response_model=QueueStatsListResponse)
async def get_all_stats(job_queue: JobQueueDep) -> QueueStatsListResponse:
    """Job counts for every queue."""
    return QueueStatsListResponse(queues=await job_queue.get_all_stats())


@router.get("/stats/{queue}", response_model=QueueStats)
async def get_queue_stats(queue: str, job_queue: JobQueueDep) -> QueueStats:
    """Job counts for one queue."""
    return await job_queue.get_stats(parse_queue_name(queue))


@router.get("/{queue}", response_model=JobListResponse)
async def list_jobs(
    queue: str,
    job_queue: JobQueueDep,
    status: str | None = None,
    limit: int = Query(default=20, ge=1, le=500),
) -> JobListResponse:
    """
    List jobs in a queue.

    Query parameters:
    - status: pending, delayed, active, completed or failed (default: a sample of each)
    - limit: Maximum results (default 20)
    """
    jobs = await job_queue.list_jobs(parse_queue_name(queue), status=status, limit=limit)
    return JobListResponse(
        jobs=[JobResponse.from_job(j) for j in jobs],
        total=len(jobs),
    )


@router.get("/{queue}/{job_id}", response_model=JobResponse)
async def get_job(queue: str, job_id: str, job_queue: JobQueueDep) -> JobResponse:
    """Get job status and details."""
    job = await job_queue.get_job(parse_queue_name(queue), job_id)
    if not job:
        raise NotFoundError(f"Job not found: {job_id}")

    return JobResponse.from_job(job)


@router.post("/{queue}/{job_id}/retry", response_model=RetryJobResponse)
async def retry_job(queue: str, job_id: str, job_queue: JobQueueDep) -> RetryJobResponse:
    """
    Resubmit a failed job.

    The failed job stays as it is; a new job with the same payload is queued.
    """
    new_id = await job_queue.retry_failed(parse_queue_name(queue), job_id)
    return RetryJobResponse(job_id=new_id, retry_of=job_id)


@router.post("/{queue}/clean", response_model=CleanQueueResponse)
async def clean_queue(
    queue: str,
    job_queue: JobQueueDep,
    request: CleanQueueRequest | None = None,
) -> CleanQueueResponse:
    """Remove completed (or failed) jobs older than the grace period."""
    request = request or CleanQueueRequest()
    queue_name = parse_queue_name(queue)

    removed = await job_queue.clean(queue_name, grace_ms=request.grace_ms, status=request.status)
    return CleanQueueResponse(
        queue=queue_name.value,
        status=JobStatus(request.status).value,
        removed=removed,
    )
