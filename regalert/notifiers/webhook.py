from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone
import logging
from typing import Any

import httpx

from ..decisions import Channel
from .base import BaseNotifier
from .message import NotificationMessage


@dataclass
class WebhookSettings:
    url: str
    headers: dict[str, str]
    channel: Channel
    timeout_seconds: int
    user_agent: str


class WebhookNotifier(BaseNotifier):
    def __init__(self, settings: WebhookSettings) -> None:
        self._settings = settings
        self.channel = settings.channel
        self._logger = logging.getLogger(__name__)

    async def send(self, message: NotificationMessage) -> bool:
        payload = _build_payload(message, self.channel)
        headers = {"User-Agent": self._settings.user_agent}
        headers.update(self._settings.headers)

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            response = await client.post(self._settings.url, json=payload, headers=headers)
            if 200 <= response.status_code < 300:
                return True
            self._logger.error("Webhook failed with status %s", response.status_code)
            return False


def _build_payload(message: NotificationMessage, channel: Channel) -> dict[str, Any]:
    published = message.published.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return {
        "channel": channel.value,
        "title": message.title,
        "summary": message.summary,
        "category": message.category,
        "score": message.score,
        "confidence": message.confidence,
        "content_variant": message.content_variant,
        "url": message.url,
        "source": message.source,
        "published": published,
        "reasons": message.reasons,
        "digest_items": message.digest_items,
    }
