"""Outbound email through the Resend HTTP API.

Delivery is best-effort: ``EmailClient.send`` reports failure as ``False`` and
never raises, and ``ReviewerNotifier`` schedules sends without awaiting them.
"""

from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from postulaciones.core.config import get_settings

logger = logging.getLogger(__name__)

# Strong references keep scheduled sends alive until they finish.
_PENDING_TASKS: set[asyncio.Task[bool]] = set()


@dataclass(frozen=True, slots=True)
class EmailMessage:
    to: str
    subject: str
    html_body: str


class EmailClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str,
        sender: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.sender = sender
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send(self, message: EmailMessage) -> bool:
        if not self.api_key:
            logger.warning("email api key not configured; skipping email to=%s", message.to)
            return False

        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("email dispatch failed to=%s error=%s", message.to, exc)
            return False

        if response.status_code >= 400:
            logger.error(
                "email provider rejected message to=%s status=%s body=%s",
                message.to,
                response.status_code,
                response.text[:500],
            )
            return False

        logger.info("email sent to=%s subject=%r", message.to, message.subject)
        return True


def reviewer_assignment_message(
    *,
    reviewer_email: str,
    reviewer_name: str,
    applicant_name: str,
    postulacion_id: int,
    assigned_by_name: str,
    panel_url: str,
) -> EmailMessage:
    body = (
        f"<p>Hola <strong>{html.escape(reviewer_name)}</strong>,</p>"
        "<p>Se te ha asignado como revisor de una postulación.</p>"
        "<ul>"
        f"<li><strong>Postulante:</strong> {html.escape(applicant_name)}</li>"
        f"<li><strong>ID de postulación:</strong> #{postulacion_id}</li>"
        f"<li><strong>Asignado por:</strong> {html.escape(assigned_by_name)}</li>"
        "</ul>"
        f'<p><a href="{html.escape(panel_url, quote=True)}">Ver postulación</a></p>'
    )
    return EmailMessage(
        to=reviewer_email,
        subject=f"Nueva asignación de revisión: {applicant_name}",
        html_body=body,
    )


class ReviewerNotifier:
    """Schedules reviewer-assignment emails without awaiting them.

    At-most-once: a failed send is logged and dropped, never retried.
    """

    def __init__(self, client: EmailClient, *, panel_url: str) -> None:
        self.client = client
        self.panel_url = panel_url

    def notify_assignment(
        self,
        *,
        reviewer_email: str | None,
        reviewer_name: str,
        applicant_name: str,
        postulacion_id: int,
        assigned_by_name: str,
    ) -> asyncio.Task[bool] | None:
        if not reviewer_email:
            logger.warning("reviewer for postulacion id=%s has no email; skipping notification", postulacion_id)
            return None

        message = reviewer_assignment_message(
            reviewer_email=reviewer_email,
            reviewer_name=reviewer_name,
            applicant_name=applicant_name,
            postulacion_id=postulacion_id,
            assigned_by_name=assigned_by_name,
            panel_url=self.panel_url,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("no running event loop; dropping notification for postulacion id=%s", postulacion_id)
            return None
        task = loop.create_task(self.client.send(message))
        _PENDING_TASKS.add(task)
        task.add_done_callback(_finish_notification)
        return task


def _finish_notification(task: asyncio.Task[bool]) -> None:
    _PENDING_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("reviewer notification crashed: %r", exc)
    elif not task.result():
        logger.warning("reviewer notification was not delivered")


@lru_cache
def get_reviewer_notifier() -> ReviewerNotifier:
    settings = get_settings()
    client = EmailClient(
        api_key=settings.resend_api_key,
        api_url=settings.resend_api_url,
        sender=settings.email_from,
        timeout_seconds=settings.email_timeout_seconds,
    )
    return ReviewerNotifier(client, panel_url=settings.admin_panel_url)
