from __future__ import annotations

import asyncio
from dataclasses import dataclass
from html import escape
import logging
from typing import Any

import httpx

from ..decisions import Channel
from .base import BaseNotifier
from .message import NotificationMessage


BREVO_ENDPOINT = "https://api.brevo.com/v3/smtp/email"

SUBJECT_PREFIXES = {
    "urgent-template": "[URGENT]",
    "informational-template": "[INFO]",
    "important-template": "[IMPORTANT]",
    "digest-template": "[DIGEST]",
}

BANNER_COLORS = {
    "urgent-template": "#dc2626",
    "informational-template": "#3b82f6",
    "important-template": "#f59e0b",
    "digest-template": "#667eea",
}

FOOTER = (
    "<p style=\"font-size:12px;color:#666\">This content is informational and does not "
    "constitute medical, legal, or financial advice.</p>"
)


@dataclass
class BrevoSettings:
    api_key: str
    sender_email: str
    sender_name: str
    recipients: list[str]
    timeout_seconds: int
    user_agent: str


class BrevoNotifier(BaseNotifier):
    channel = Channel.EMAIL

    def __init__(self, settings: BrevoSettings) -> None:
        self._settings = settings
        self._logger = logging.getLogger(__name__)

    async def send(self, message: NotificationMessage) -> bool:
        if not self._settings.recipients:
            self._logger.warning("No email recipients configured; skipping %s", message.title)
            return False
        payload = _build_payload(message, self._settings)
        headers = {
            "api-key": self._settings.api_key,
            "accept": "application/json",
            "User-Agent": self._settings.user_agent,
        }

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            for attempt in range(3):
                response = await client.post(BREVO_ENDPOINT, json=payload, headers=headers)
                if response.status_code == 429:
                    retry_after = _retry_after(response)
                    self._logger.warning("Brevo rate limit hit, sleeping %.2fs", retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                if 200 <= response.status_code < 300:
                    return True
                self._logger.error("Brevo send failed with status %s", response.status_code)
                return False
            return False


def build_subject(message: NotificationMessage) -> str:
    prefix = SUBJECT_PREFIXES.get(message.content_variant or "", "")
    if message.content_variant == "digest-template":
        return f"{prefix} Daily Regulatory Digest: {len(message.digest_items)} updates"
    return f"{prefix} {message.title}".strip()


def _build_payload(message: NotificationMessage, settings: BrevoSettings) -> dict[str, Any]:
    return {
        "sender": {"name": settings.sender_name, "email": settings.sender_email},
        "to": [{"email": address} for address in settings.recipients],
        "subject": build_subject(message),
        "htmlContent": _render_html(message),
        "textContent": message.summary,
        "tags": [message.category.lower(), message.source],
    }


def _render_html(message: NotificationMessage) -> str:
    color = BANNER_COLORS.get(message.content_variant or "", "#1e40af")
    parts = [
        f"<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto\">",
        f"<div style=\"background:{color};color:white;padding:20px\"><h1>{escape(message.category)} Alert</h1></div>",
        f"<h2>{escape(message.title)}</h2>",
        f"<p>{escape(message.summary)}</p>",
        f"<p><strong>Source:</strong> {escape(message.source)}</p>",
    ]
    if message.content_variant != "informational-template":
        if message.manufacturer:
            parts.append(f"<p><strong>Manufacturer:</strong> {escape(message.manufacturer)}</p>")
        if message.device:
            parts.append(f"<p><strong>Device:</strong> {escape(message.device)}</p>")
    for item in message.digest_items:
        parts.append(
            f"<p><strong>[{escape(str(item.get('category')))}]</strong> {escape(str(item.get('title')))}</p>"
        )
    if message.url:
        parts.append(f"<p><a href=\"{escape(message.url)}\">View full details</a></p>")
    parts.append(FOOTER)
    parts.append("</div>")
    return "".join(parts)


def _retry_after(response: httpx.Response) -> float:
    value = response.headers.get("Retry-After")
    if not value:
        return 1.0
    try:
        return float(value)
    except ValueError:
        return 1.0
