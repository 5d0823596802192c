"""Outbound "complaint forwarded" emails rendered with Jinja2 and sent over httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .identity import Profile
from .models import Complaint, ComplaintUrgency
from .observability import MetricsRecorder

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .config import Settings

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
_FORWARD_TEMPLATE = "forward_complaint.html"
_URGENT = {ComplaintUrgency.HIGH, ComplaintUrgency.CRITICAL}


@dataclass(slots=True, frozen=True)
class ForwardResult:
    recipient: str
    delivered: bool
    status_code: int | None = None
    message_id: str | None = None
    error: str | None = None


class NotificationDispatcher:
    """Fire-and-forget email dispatch; failures are logged and counted, never raised."""

    def __init__(
        self,
        settings: "Settings",
        *,
        client: httpx.Client | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._metrics = metrics
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def render_forward(
        self,
        complaint: Complaint,
        *,
        recipient_name: str,
        submitter_name: str,
        complaint_url: str,
    ) -> tuple[str, str]:
        """Return the subject line and HTML body of a forwarded complaint."""

        template = self._env.get_template(_FORWARD_TEMPLATE)
        html = template.render(
            complaint=complaint,
            recipient_name=recipient_name,
            submitter_name=submitter_name,
            complaint_url=complaint_url,
            urgent=complaint.urgency in _URGENT,
            submitted=_format_timestamp(complaint.created_at),
        )
        return f"Forwarded Complaint: {complaint.title}", html

    def forward(
        self,
        complaint: Complaint,
        recipient: Profile,
        *,
        submitter_name: str,
        complaint_url: str,
    ) -> ForwardResult:
        if not recipient.email:
            return self._skipped(complaint, recipient.id, "no_email")
        if not self._settings.email_enabled:
            return self._skipped(complaint, recipient.email, "disabled")

        subject, html = self.render_forward(
            complaint,
            recipient_name=recipient.name,
            submitter_name=submitter_name,
            complaint_url=complaint_url,
        )
        payload = {
            "from": self._settings.email_sender,
            "to": [recipient.email],
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self._settings.email_api_key}"}
        try:
            if self._client is not None:
                response = self._client.post(self._settings.email_api_url, json=payload, headers=headers)
            else:
                response = httpx.post(
                    self._settings.email_api_url,
                    json=payload,
                    headers=headers,
                    timeout=self._settings.email_timeout,
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return self._failed(complaint, recipient.email, str(exc), exc.response.status_code)
        except httpx.HTTPError as exc:
            return self._failed(complaint, recipient.email, str(exc), None)

        message_id = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("id"):
            message_id = str(body["id"])
        logger.info(
            "notification.forward.sent complaint=%s recipient=%s message_id=%s",
            complaint.id,
            recipient.email,
            message_id,
        )
        if self._metrics:
            self._metrics.increment("notification.forward", outcome="sent")
        return ForwardResult(
            recipient=recipient.email,
            delivered=True,
            status_code=response.status_code,
            message_id=message_id,
        )

    def _skipped(self, complaint: Complaint, recipient: str, reason: str) -> ForwardResult:
        logger.info("notification.forward.skipped complaint=%s recipient=%s reason=%s", complaint.id, recipient, reason)
        if self._metrics:
            self._metrics.increment("notification.forward", outcome="skipped")
        return ForwardResult(recipient=recipient, delivered=False, error=reason)

    def _failed(self, complaint: Complaint, recipient: str, error: str, status_code: int | None) -> ForwardResult:
        logger.error(
            "notification.forward.failed complaint=%s recipient=%s status=%s error=%s",
            complaint.id,
            recipient,
            status_code,
            error,
        )
        if self._metrics:
            self._metrics.increment("notification.forward", outcome="failed")
        return ForwardResult(recipient=recipient, delivered=False, status_code=status_code, error=error)


def _format_timestamp(value: str) -> str:
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return value
    return moment.strftime("%B %d, %Y %H:%M UTC")


__all__ = ["ForwardResult", "NotificationDispatcher"]
