"""Transactional email rendering and SMTP delivery."""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Any, Awaitable, Callable

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fluxerp.config import Settings
from fluxerp.jobs.models import EmailRecipient, EmailType
from fluxerp.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_EXCEPTIONS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    TimeoutError,
    ConnectionError,
)


def format_address(recipient: EmailRecipient) -> str:
    if recipient.name:
        return f'"{recipient.name}" <{recipient.email}>'
    return recipient.email


def _lines(*pairs: tuple[str, Any]) -> list[str]:
    return [f"{label}: {value}" for label, value in pairs if value not in (None, "")]


def render_eco_created(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] New ECO Created: {data.get('ecoTitle', '')}"
    body = [
        "A new Engineering Change Order has been created.",
        "",
        *_lines(
            ("Title", data.get("ecoTitle")),
            ("Product", data.get("productName")),
            ("SKU", data.get("productSku")),
            ("Status", data.get("status")),
            ("Priority", data.get("priority")),
            ("Requested by", data.get("requestedBy")),
            ("Reason", data.get("reason")),
            ("Description", data.get("description")),
            ("View", data.get("link")),
        ),
    ]
    return subject, "\n".join(body)


def render_eco_status_changed(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] ECO Status Updated: {data.get('ecoTitle', '')}"
    body = [
        f"The status of ECO \"{data.get('ecoTitle', '')}\" changed "
        f"from {data.get('oldStatus', 'unknown')} to {data.get('status', 'unknown')}.",
        "",
        *_lines(
            ("Changed by", data.get("changedBy")),
            ("Priority", data.get("priority")),
            ("View", data.get("link")),
        ),
    ]
    return subject, "\n".join(body)


def render_eco_assigned(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] ECO Assigned to You: {data.get('ecoTitle', '')}"
    body = [
        f"{data.get('assignedBy', 'Someone')} assigned ECO \"{data.get('ecoTitle', '')}\" to you.",
        "",
        *_lines(
            ("Status", data.get("status")),
            ("Priority", data.get("priority")),
            ("View", data.get("link")),
        ),
    ]
    return subject, "\n".join(body)


def render_workorder_created(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] New Work Order: {data.get('productName', '')}"
    body = [
        "A new work order has been created.",
        "",
        *_lines(
            ("Work order", data.get("workOrderName") or data.get("workOrderId")),
            ("Product", data.get("productName")),
            ("SKU", data.get("productSku")),
            ("Quantity", data.get("quantity")),
            ("Status", data.get("status")),
            ("Priority", data.get("priority")),
            ("Scheduled start", data.get("scheduledStart")),
            ("Scheduled end", data.get("scheduledEnd")),
            ("View", data.get("link")),
        ),
    ]
    return subject, "\n".join(body)


def render_workorder_status_changed(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] Work Order Status Updated: {data.get('productName', '')}"
    body = [
        f"Work order status changed from {data.get('oldStatus', 'unknown')} "
        f"to {data.get('status', 'unknown')}.",
        "",
        *_lines(
            ("Product", data.get("productName")),
            ("Changed by", data.get("changedBy")),
            ("View", data.get("link")),
        ),
    ]
    return subject, "\n".join(body)


def render_notification(data: dict[str, Any]) -> tuple[str, str]:
    subject = f"[FluxERP] {data.get('title', 'Notification')}"
    body = [data.get("message", "")]
    if data.get("actionLink"):
        body += ["", f"{data.get('actionText') or 'Open'}: {data['actionLink']}"]
    return subject, "\n".join(body)


RENDERERS: dict[EmailType, Callable[[dict[str, Any]], tuple[str, str]]] = {
    EmailType.ECO_CREATED: render_eco_created,
    EmailType.ECO_STATUS_CHANGED: render_eco_status_changed,
    EmailType.ECO_ASSIGNED: render_eco_assigned,
    EmailType.WORKORDER_CREATED: render_workorder_created,
    EmailType.WORKORDER_STATUS_CHANGED: render_workorder_status_changed,
    EmailType.NOTIFICATION: render_notification,
}

# Assignment mails go to the assignee only
SINGLE_RECIPIENT_TYPES = frozenset({EmailType.ECO_ASSIGNED})


class EmailService:
    """
    Sends rendered transactional emails over SMTP.

    When SMTP credentials are not configured the send is logged and
    reported as successful, so development environments work without a
    mail server.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Callable[[EmailMessage], Awaitable[None]] | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    def build_message(
        self,
        email_type: EmailType,
        recipients: list[EmailRecipient],
        data: dict[str, Any],
    ) -> EmailMessage:
        link = data.get("actionLink")
        if isinstance(link, str) and link.startswith("/"):
            data = {**data, "actionLink": self.settings.frontend_url.rstrip("/") + link}

        subject, body = RENDERERS[email_type](data)
        if email_type in SINGLE_RECIPIENT_TYPES:
            recipients = recipients[:1]

        message = EmailMessage()
        message["From"] = self.settings.smtp_from
        message["To"] = ", ".join(format_address(r) for r in recipients)
        message["Subject"] = subject
        message.set_content(body)
        return message

    async def send(
        self,
        email_type: EmailType,
        recipients: list[EmailRecipient],
        data: dict[str, Any],
    ) -> int:
        """Render and send one email; returns the number of recipients addressed."""
        email_type = EmailType(email_type)
        message = self.build_message(email_type, recipients, data)
        sent_to = 1 if email_type in SINGLE_RECIPIENT_TYPES else len(recipients)

        if self._transport is None and not self.settings.smtp_configured:
            logger.info(
                "Skipping email send (SMTP not configured)",
                to=message["To"],
                subject=message["Subject"],
            )
            return sent_to

        await self._deliver(message)
        logger.info("Email sent", to=message["To"], subject=message["Subject"])
        return sent_to

    @retry(
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _deliver(self, message: EmailMessage) -> None:
        if self._transport is not None:
            await self._transport(message)
            return
        await asyncio.to_thread(self._send_smtp, message)

    def _send_smtp(self, message: EmailMessage) -> None:
        settings = self.settings
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(message)
