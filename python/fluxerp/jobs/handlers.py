"""Job handlers for the four declared queues."""

import smtplib
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from fluxerp.errors import JobHandlerError, UnknownJobTypeError
from fluxerp.jobs.email import EmailService
from fluxerp.jobs.models import (
    AIAnalysisJobData,
    EmailJobData,
    NotificationJobData,
    QueueName,
    ReportJobData,
    utcnow,
)
from fluxerp.jobs.pool import Handler, JobContext
from fluxerp.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

AnalysisProvider = Callable[[AIAnalysisJobData], Awaitable[str]]
NotificationSink = Callable[[str, NotificationJobData], Awaitable[None]]


def load_payload(ctx: JobContext, model: type[M]) -> M:
    """
    Validate a stored payload at execution time.

    Payloads are validated on submit, so a mismatch here means the record
    was written by something else (an older release, a manual edit). Retrying
    cannot fix it.
    """
    try:
        return model.model_validate(ctx.job.payload)
    except PydanticValidationError as e:
        raise UnknownJobTypeError(
            f"Unrecognised payload for {ctx.job.queue_name} job {ctx.job.name}: "
            f"{e.error_count()} validation error(s)"
        ) from e


async def placeholder_analysis(data: AIAnalysisJobData) -> str:
    """Stand-in used until a model-backed provider is configured."""
    return f"AI analysis for {data.type.value} on {data.entity_type.value} {data.entity_id}"


class JobHandlers:
    """Handler functions, one per queue, sharing their collaborators."""

    def __init__(
        self,
        email_service: EmailService,
        analysis_provider: AnalysisProvider = placeholder_analysis,
        notification_sink: NotificationSink | None = None,
    ) -> None:
        self.email_service = email_service
        self.analysis_provider = analysis_provider
        self.notification_sink = notification_sink

    def for_queue(self, queue_name: QueueName) -> Handler:
        """Return the handler for a queue."""
        handlers: dict[QueueName, Handler] = {
            QueueName.EMAIL: self.process_email,
            QueueName.AI_ANALYSIS: self.process_ai_analysis,
            QueueName.REPORTS: self.process_report,
            QueueName.NOTIFICATIONS: self.process_notification,
        }
        return handlers[QueueName(queue_name)]

    async def process_email(self, ctx: JobContext) -> dict[str, Any]:
        data = load_payload(ctx, EmailJobData)
        log = logger.bind(job_id=ctx.job.id, type=data.type.value)
        log.info("Processing email job", recipients=len(data.recipients))

        try:
            sent_to = await self.email_service.send(data.type, data.recipients, data.data)
        except (smtplib.SMTPException, OSError) as e:
            log.error("Email job failed", error=str(e))
            raise JobHandlerError(f"Email delivery failed: {e}") from e

        log.info("Email job completed", sent_to=sent_to)
        return {"success": True, "sent_to": sent_to}

    async def process_ai_analysis(self, ctx: JobContext) -> dict[str, Any]:
        data = load_payload(ctx, AIAnalysisJobData)
        log = logger.bind(job_id=ctx.job.id, type=data.type.value, entity_id=data.entity_id)
        log.info("Processing AI analysis job")

        await ctx.update_progress(10)
        analysis = await self.analysis_provider(data)
        await ctx.update_progress(50)

        result = {
            "type": data.type.value,
            "entity_id": data.entity_id,
            "entity_type": data.entity_type.value,
            "analysis": analysis,
            "timestamp": utcnow().isoformat(),
        }

        await ctx.update_progress(100)
        log.info("AI analysis job completed")
        return result

    async def process_report(self, ctx: JobContext) -> dict[str, Any]:
        data = load_payload(ctx, ReportJobData)
        log = logger.bind(job_id=ctx.job.id, type=data.type.value, user_id=data.user_id)
        log.info("Processing report job")

        await ctx.update_progress(10)
        await ctx.update_progress(50)

        result = {
            "type": data.type.value,
            "user_id": data.user_id,
            "date_range": data.date_range.model_dump(mode="json") if data.date_range else None,
            "filters": data.filters,
            "generated_at": utcnow().isoformat(),
            "download_url": f"/api/reports/download/{ctx.job.id}",
        }

        await ctx.update_progress(100)
        log.info("Report job completed")
        return result

    async def process_notification(self, ctx: JobContext) -> dict[str, Any]:
        data = load_payload(ctx, NotificationJobData)
        log = logger.bind(job_id=ctx.job.id, type=data.type.value, user_id=data.user_id)
        log.info("Processing notification job")

        if self.notification_sink is not None:
            await self.notification_sink(ctx.job.id, data)

        result = {
            "type": data.type.value,
            "user_id": data.user_id,
            "title": data.title,
            "notified_at": utcnow().isoformat(),
        }

        log.info("Notification job completed")
        return result
