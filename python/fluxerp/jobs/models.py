"""Job models for background task processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class QueueName(str, Enum):
    """Job classes, one queue and one worker pool each."""

    EMAIL = "email"
    AI_ANALYSIS = "ai-analysis"
    REPORTS = "reports"
    NOTIFICATIONS = "notifications"


class JobStatus(str, Enum):
    """Job execution status."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(int, Enum):
    """Named priorities; lower runs first."""

    HIGH = 1
    NOTIFICATION = 3
    NORMAL = 5
    LOW = 10


# =============================================================================
# Payloads
# =============================================================================


class EmailType(str, Enum):
    ECO_CREATED = "eco-created"
    ECO_STATUS_CHANGED = "eco-status-changed"
    ECO_ASSIGNED = "eco-assigned"
    WORKORDER_CREATED = "workorder-created"
    WORKORDER_STATUS_CHANGED = "workorder-status-changed"
    NOTIFICATION = "notification"


class AIAnalysisType(str, Enum):
    RISK_SCORE = "risk-score"
    IMPACT_ANALYSIS = "impact-analysis"
    COMPLIANCE_CHECK = "compliance-check"
    CHANGE_SUGGESTION = "change-suggestion"


class AnalysisEntityType(str, Enum):
    ECO = "ECO"
    PRODUCT = "Product"
    BOM = "BOM"


class ReportType(str, Enum):
    ECO_SUMMARY = "eco-summary"
    WORKORDER_SUMMARY = "workorder-summary"
    INVENTORY_REPORT = "inventory-report"
    AUDIT_LOG = "audit-log"


class NotificationType(str, Enum):
    IN_APP = "in-app"
    PUSH = "push"


class EmailRecipient(BaseModel):
    email: str = Field(min_length=3)
    name: str | None = None


class EmailJobData(BaseModel):
    """Payload for the email queue."""

    type: EmailType
    recipients: list[EmailRecipient] = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class AIAnalysisJobData(BaseModel):
    """Payload for the AI analysis queue."""

    type: AIAnalysisType
    entity_id: str
    entity_type: AnalysisEntityType
    data: dict[str, Any] = Field(default_factory=dict)


class DateRange(BaseModel):
    start: datetime
    end: datetime


class ReportJobData(BaseModel):
    """Payload for the reports queue."""

    type: ReportType
    user_id: str
    date_range: DateRange | None = None
    filters: dict[str, Any] | None = None


class NotificationJobData(BaseModel):
    """Payload for the notifications queue."""

    type: NotificationType
    user_id: str
    title: str
    message: str
    link: str | None = None


PAYLOAD_MODELS: dict[QueueName, type[BaseModel]] = {
    QueueName.EMAIL: EmailJobData,
    QueueName.AI_ANALYSIS: AIAnalysisJobData,
    QueueName.REPORTS: ReportJobData,
    QueueName.NOTIFICATIONS: NotificationJobData,
}

JOB_NAME_PREFIXES: dict[QueueName, str] = {
    QueueName.EMAIL: "email",
    QueueName.AI_ANALYSIS: "ai",
    QueueName.REPORTS: "report",
    QueueName.NOTIFICATIONS: "notification",
}


# =============================================================================
# Job record
# =============================================================================


class JobOptions(BaseModel):
    """Per-submission options."""

    max_attempts: int | None = Field(default=None, ge=1)
    priority: int = JobPriority.NORMAL
    dedup_key: str | None = None


class Job(BaseModel):
    """Job record."""

    id: str
    queue_name: QueueName
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempt: int = 0
    max_attempts: int = Field(default=3, ge=1)
    priority: int = JobPriority.NORMAL
    progress: int = Field(default=0, ge=0, le=100)
    result: Any = None
    last_error: str | None = None
    dedup_key: str | None = None

    # Lineage for manual retries of failed jobs
    retry_of: str | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    available_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    class Config:
        use_enum_values = True

    @property
    def finished_at(self) -> datetime | None:
        """Time the job reached its terminal state."""
        return self.completed_at or self.failed_at

    @property
    def order_score(self) -> float:
        """Pending-queue ordering: priority first, then FIFO by availability."""
        return self.priority * 10**13 + self.available_at.timestamp() * 1000


class QueueStats(BaseModel):
    """Per-queue job counts."""

    name: str
    pending: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    store_available: bool = True


class JobResponse(BaseModel):
    """Job response for API."""

    id: str
    queue_name: str
    name: str
    status: str
    progress: int
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    result: Any
    last_error: str | None
    retry_of: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        """Create response from Job model."""
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            name=job.name,
            status=job.status,
            progress=job.progress,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            result=job.result,
            last_error=job.last_error,
            retry_of=job.retry_of,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )
