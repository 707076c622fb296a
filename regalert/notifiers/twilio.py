from __future__ import annotations

from dataclasses import dataclass
import logging

import httpx

from ..decisions import Channel
from .base import BaseNotifier
from .message import NotificationMessage


TWILIO_ENDPOINT = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


@dataclass
class TwilioSettings:
    account_sid: str
    auth_token: str
    from_number: str
    recipients: list[str]
    dashboard_url: str
    timeout_seconds: int
    user_agent: str


class TwilioNotifier(BaseNotifier):
    channel = Channel.SMS

    def __init__(self, settings: TwilioSettings) -> None:
        self._settings = settings
        self._logger = logging.getLogger(__name__)

    async def send(self, message: NotificationMessage) -> bool:
        if not self._settings.recipients:
            self._logger.warning("No SMS recipients configured; skipping %s", message.title)
            return False
        url = TWILIO_ENDPOINT.format(sid=self._settings.account_sid)
        body = build_sms_body(message, self._settings.dashboard_url)
        headers = {"User-Agent": self._settings.user_agent}
        delivered = True

        async with httpx.AsyncClient(
            timeout=self._settings.timeout_seconds,
            auth=(self._settings.account_sid, self._settings.auth_token),
        ) as client:
            for phone in self._settings.recipients:
                data = {"From": self._settings.from_number, "To": phone, "Body": body}
                response = await client.post(url, data=data, headers=headers)
                if 200 <= response.status_code < 300:
                    continue
                self._logger.error("Twilio send to %s failed with status %s", phone, response.status_code)
                delivered = False
        return delivered


def build_sms_body(message: NotificationMessage, dashboard_url: str) -> str:
    title = message.title
    if len(title) > 100:
        title = title[:100] + "..."
    body = f"URGENT alert: {title}"
    if dashboard_url:
        body += f"\n\nView details: {dashboard_url}"
    return body
