"""Task notification emails: template rendering, recipients, Resend API client."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from fleetcheck.common.errors import EmailError
from fleetcheck.common.models import ChecklistHeader, TaskInstance

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com"
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_CONTENT_FALLBACKS = {
    "registration": "[Vehicle Registration]",
    "makeModel": "[Make/Model]",
    "driverName": "[Driver Name]",
    "taskName": "[Task Name]",
}


def _substitute(text: str, values: Mapping[str, str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda match: values.get(match.group(1), ""), text)


def render_email(
    templates: Mapping[str, Mapping[str, str]],
    template_name: str,
    task: TaskInstance,
    header: ChecklistHeader,
) -> tuple[str, str]:
    """Return (subject, body) for a task, falling back to the default template."""
    template = templates.get(template_name) or templates.get("default") or {"subject": "", "body": ""}
    values = {
        "registration": header.registration or _CONTENT_FALLBACKS["registration"],
        "makeModel": header.make_model or _CONTENT_FALLBACKS["makeModel"],
        "driverName": header.driver_name or _CONTENT_FALLBACKS["driverName"],
        "taskName": task.task or _CONTENT_FALLBACKS["taskName"],
    }
    subject = _substitute(template.get("subject", ""), values)
    body = _substitute(template.get("body", ""), values)
    return subject, body


def resolve_recipients(
    patterns: Iterable[str],
    header: ChecklistHeader,
    default_recipient: str,
) -> list[str]:
    """Fill header placeholders (``{{driverEmail}}``, ``{{sellerEmail}}``) into each pattern.

    Empty results are dropped; an empty list falls back to ``default_recipient``.
    """
    values = header.model_dump(by_alias=True)
    resolved: list[str] = []
    for pattern in patterns:
        address = _substitute(pattern, {k: str(v or "") for k, v in values.items()}).strip()
        if address and address not in resolved:
            resolved.append(address)
    if not resolved and default_recipient:
        resolved.append(default_recipient)
    return resolved


class ResendClient:
    """Minimal client for the Resend transactional email API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = RESEND_API_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def send_email(
        self,
        *,
        sender: str,
        to: list[str],
        subject: str,
        body: str,
        reply_to: str | None = None,
    ) -> dict[str, Any]:
        if not sender or not to or not subject or not body:
            raise EmailError("Missing required fields: from, to, subject, body")

        payload: dict[str, Any] = {
            "from": f"Fleet Management <{sender}>",
            "to": to,
            "subject": subject,
            "text": body,
        }
        if reply_to:
            payload["reply_to"] = reply_to
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/emails", headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise EmailError("Email API request timed out") from exc
        except httpx.HTTPError as exc:
            raise EmailError(f"Email API request failed: {exc}") from exc

        if response.status_code >= 400:
            error_msg = response.text
            try:
                error_json = response.json()
            except ValueError:
                error_json = None
            if isinstance(error_json, dict):
                error_msg = str(error_json.get("message", error_msg))
            raise EmailError(f"Email API error ({response.status_code}): {error_msg}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}


class EmailNotifier:
    def __init__(
        self,
        client: ResendClient,
        templates: Mapping[str, Mapping[str, str]],
        *,
        sender: str,
        default_recipient: str,
        reply_to: str | None = None,
    ) -> None:
        self.client = client
        self.templates = templates
        self.sender = sender
        self.default_recipient = default_recipient
        self.reply_to = reply_to

    def send(self, task: TaskInstance, recipients: list[str], subject: str, body: str) -> dict[str, Any]:
        result = self.client.send_email(
            sender=self.sender,
            to=recipients,
            subject=subject,
            body=body,
            reply_to=self.reply_to,
        )
        logger.info("Email sent for task %s to=%s id=%s", task.task_id, recipients, result.get("id"))
        return result

    def notify(self, task: TaskInstance, header: ChecklistHeader) -> dict[str, Any]:
        """Render and send the notification for a task that was just actioned."""
        subject, body = render_email(self.templates, task.email_template, task, header)
        recipients = resolve_recipients(task.email_recipients, header, self.default_recipient)
        return self.send(task, recipients, subject, body)
