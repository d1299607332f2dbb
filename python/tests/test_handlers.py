"""
Tests for the per-queue job handlers and email rendering.
"""

import smtplib

import pytest

from fluxerp.errors import JobHandlerError, UnknownJobTypeError
from fluxerp.jobs.email import RENDERERS, EmailService
from fluxerp.jobs.handlers import JobHandlers
from fluxerp.jobs.models import EmailRecipient, EmailType, QueueName
from fluxerp.jobs.pool import JobContext


class RecordingTransport:
    """Collects messages instead of talking to an SMTP server."""

    def __init__(self, error: Exception | None = None) -> None:
        self.messages = []
        self.error = error

    async def __call__(self, message):
        if self.error is not None:
            raise self.error
        self.messages.append(message)


async def context_for(job_queue, job_store, queue_name, payload) -> JobContext:
    await job_queue.submit(queue_name, payload)
    job = await job_store.claim(queue_name)
    return JobContext(job, job_store)


RECIPIENTS = [
    {"email": "owner@fluxerp.test", "name": "Owner"},
    {"email": "reviewer@fluxerp.test"},
]


class TestEmailRendering:
    """Subjects and recipients."""

    def test_every_email_type_has_a_renderer(self):
        assert set(RENDERERS) == set(EmailType)

    def test_subject_is_prefixed(self, settings):
        service = EmailService(settings)
        message = service.build_message(
            EmailType.ECO_STATUS_CHANGED,
            [EmailRecipient(email="a@fluxerp.test")],
            {"ecoTitle": "Swap fastener", "oldStatus": "draft", "status": "approved"},
        )

        assert message["Subject"] == "[FluxERP] ECO Status Updated: Swap fastener"
        assert "from draft to approved" in message.get_content()

    def test_named_recipient_is_quoted(self, settings):
        service = EmailService(settings)
        message = service.build_message(
            EmailType.NOTIFICATION,
            [EmailRecipient(email="a@fluxerp.test", name="Ana")],
            {"title": "Heads up", "message": "Stock is low"},
        )

        assert message["To"] == '"Ana" <a@fluxerp.test>'
        assert message["Subject"] == "[FluxERP] Heads up"

    def test_relative_action_link_points_at_frontend(self, settings):
        settings = settings.model_copy(update={"frontend_url": "https://erp.example.com/"})
        service = EmailService(settings)
        message = service.build_message(
            EmailType.NOTIFICATION,
            [EmailRecipient(email="a@fluxerp.test")],
            {"title": "ECO approved", "actionLink": "/ecos/42", "actionText": "View ECO"},
        )

        assert "View ECO: https://erp.example.com/ecos/42" in message.get_content()


class TestEmailHandler:
    """Email queue handler."""

    @pytest.mark.asyncio
    async def test_sends_to_all_recipients(self, settings, job_queue, job_store):
        transport = RecordingTransport()
        handlers = JobHandlers(EmailService(settings, transport=transport))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.EMAIL,
            {"type": "eco-created", "recipients": RECIPIENTS, "data": {"ecoTitle": "Swap"}},
        )

        result = await handlers.for_queue(QueueName.EMAIL)(ctx)

        assert result == {"success": True, "sent_to": 2}
        assert len(transport.messages) == 1
        assert "reviewer@fluxerp.test" in transport.messages[0]["To"]

    @pytest.mark.asyncio
    async def test_assignment_goes_to_first_recipient_only(self, settings, job_queue, job_store):
        transport = RecordingTransport()
        handlers = JobHandlers(EmailService(settings, transport=transport))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.EMAIL,
            {"type": "eco-assigned", "recipients": RECIPIENTS, "data": {"ecoTitle": "Swap"}},
        )

        result = await handlers.process_email(ctx)

        assert result["sent_to"] == 1
        assert transport.messages[0]["To"] == '"Owner" <owner@fluxerp.test>'

    @pytest.mark.asyncio
    async def test_without_smtp_send_is_skipped_but_succeeds(self, settings, job_queue, job_store):
        handlers = JobHandlers(EmailService(settings))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.EMAIL,
            {"type": "notification", "recipients": RECIPIENTS[:1], "data": {"title": "Hi"}},
        )

        assert await handlers.process_email(ctx) == {"success": True, "sent_to": 1}

    @pytest.mark.asyncio
    async def test_send_failure_raises_retryable_error(self, settings, job_queue, job_store):
        transport = RecordingTransport(error=smtplib.SMTPRecipientsRefused({}))
        handlers = JobHandlers(EmailService(settings, transport=transport))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.EMAIL,
            {"type": "workorder-created", "recipients": RECIPIENTS, "data": {}},
        )

        with pytest.raises(JobHandlerError) as exc_info:
            await handlers.process_email(ctx)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unrecognised_stored_payload_is_not_retryable(self, settings, job_queue, job_store):
        handlers = JobHandlers(EmailService(settings))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.EMAIL,
            {"type": "eco-created", "recipients": RECIPIENTS, "data": {}},
        )
        ctx.job.payload["type"] = "eco-archived"

        with pytest.raises(UnknownJobTypeError) as exc_info:
            await handlers.process_email(ctx)

        assert exc_info.value.retryable is False


class TestOtherHandlers:
    """AI analysis, reports and notifications."""

    @pytest.mark.asyncio
    async def test_ai_analysis_reports_progress(self, settings, job_queue, job_store):
        handlers = JobHandlers(EmailService(settings))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.AI_ANALYSIS,
            {"type": "impact-analysis", "entity_id": "eco-7", "entity_type": "ECO"},
        )

        result = await handlers.process_ai_analysis(ctx)

        assert ctx.job.progress == 100
        assert result["type"] == "impact-analysis"
        assert result["entity_id"] == "eco-7"
        assert result["entity_type"] == "ECO"
        assert "eco-7" in result["analysis"]

    @pytest.mark.asyncio
    async def test_ai_analysis_uses_configured_provider(self, settings, job_queue, job_store):
        async def provider(data):
            return f"risk for {data.entity_id}: low"

        handlers = JobHandlers(EmailService(settings), analysis_provider=provider)
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.AI_ANALYSIS,
            {"type": "risk-score", "entity_id": "bom-3", "entity_type": "BOM"},
        )

        result = await handlers.process_ai_analysis(ctx)

        assert result["analysis"] == "risk for bom-3: low"

    @pytest.mark.asyncio
    async def test_report_links_download(self, settings, job_queue, job_store):
        handlers = JobHandlers(EmailService(settings))
        ctx = await context_for(
            job_queue,
            job_store,
            QueueName.REPORTS,
            {
                "type": "eco-summary",
                "user_id": "u-9",
                "date_range": {"start": "2026-01-01T00:00:00Z", "end": "2026-02-01T00:00:00Z"},
                "filters": {"status": "approved"},
            },
        )

        result = await handlers.process_report(ctx)

        assert result["download_url"] == f"/api/reports/download/{ctx.job.id}"
        assert result["filters"] == {"status": "approved"}
        assert result["date_range"]["start"].startswith("2026-01-01")
        assert ctx.job.progress == 100

    @pytest.mark.asyncio
    async def test_notification_is_delivered_to_sink(
        self, settings, job_queue, job_store, notification_payload
    ):
        delivered = []

        async def sink(job_id, data):
            delivered.append((job_id, data.user_id))

        handlers = JobHandlers(EmailService(settings), notification_sink=sink)
        ctx = await context_for(job_queue, job_store, QueueName.NOTIFICATIONS, notification_payload)

        result = await handlers.process_notification(ctx)

        assert delivered == [(ctx.job.id, "user-1")]
        assert result["title"] == "ECO approved"
        assert "notified_at" in result
