from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from .base import BaseNotifier
from .brevo import BrevoNotifier, BrevoSettings
from .message import NotificationMessage
from .twilio import TwilioNotifier, TwilioSettings
from .webhook import WebhookNotifier, WebhookSettings
from ..config import Config
from ..decisions import Channel, NotificationPlan
from ..scoring import ScoredEvent


def build_notifiers(config: Config) -> dict[Channel, list[BaseNotifier]]:
    logger = logging.getLogger(__name__)
    notifiers: dict[Channel, list[BaseNotifier]] = {}
    for target in config.notifications.targets:
        notifier = _build_target(target.type, target.settings, config)
        if notifier is None:
            logger.warning("Skipping notify target %s: incomplete settings", target.type)
            continue
        notifiers.setdefault(notifier.channel, []).append(notifier)
    return notifiers


def _build_target(target_type: str, settings: dict[str, Any], config: Config) -> BaseNotifier | None:
    normalized = target_type.lower()
    timeout = config.settings.request_timeout_seconds
    user_agent = config.settings.user_agent
    if normalized == "brevo":
        api_key = _normalize_secret(settings.get("api_key"))
        sender = _normalize_secret(settings.get("sender_email"))
        if not api_key or not sender:
            return None
        return BrevoNotifier(
            BrevoSettings(
                api_key=api_key,
                sender_email=sender,
                sender_name=str(settings.get("sender_name", "Regulatory Alerts")),
                recipients=_string_list(settings.get("recipients")),
                timeout_seconds=timeout,
                user_agent=user_agent,
            )
        )
    if normalized == "twilio":
        sid = _normalize_secret(settings.get("account_sid"))
        token = _normalize_secret(settings.get("auth_token"))
        from_number = _normalize_secret(settings.get("from_number"))
        if not sid or not token or not from_number:
            return None
        return TwilioNotifier(
            TwilioSettings(
                account_sid=sid,
                auth_token=token,
                from_number=from_number,
                recipients=_string_list(settings.get("recipients")),
                dashboard_url=str(settings.get("dashboard_url", "")),
                timeout_seconds=timeout,
                user_agent=user_agent,
            )
        )
    if normalized == "webhook":
        url = _normalize_url(settings.get("url"))
        if not url:
            return None
        try:
            channel = Channel(str(settings.get("channel", "email")).lower())
        except ValueError:
            return None
        headers = settings.get("headers")
        if headers is None:
            headers = {}
        return WebhookNotifier(
            WebhookSettings(
                url=url,
                headers={str(k): str(v) for k, v in headers.items()},
                channel=channel,
                timeout_seconds=timeout,
                user_agent=user_agent,
            )
        )
    return None


def _normalize_url(value: Any) -> str | None:
    if not value or not isinstance(value, str):
        return None
    if "${" in value:
        return None
    if not (value.startswith("http://") or value.startswith("https://")):
        return None
    return value


def _normalize_secret(value: Any) -> str | None:
    if not value or not isinstance(value, str):
        return None
    if "${" in value:
        return None
    return value


def _string_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value if item]


def build_notification_message(scored: ScoredEvent, plan: NotificationPlan) -> NotificationMessage:
    event = scored.event
    return NotificationMessage(
        title=event.title,
        summary=plan.summary or event.description or event.title,
        category=scored.category.value,
        score=scored.score,
        confidence=scored.confidence.value,
        url=event.url,
        source=event.source_tag,
        published=event.occurred_at,
        content_variant=plan.content_variant,
        manufacturer=event.manufacturer,
        device=event.device_descriptor,
        reasons=list(scored.reasons),
    )


def build_digest_message(entries: list[dict[str, Any]], summary: str) -> NotificationMessage:
    top = max((entry.get("score", 0) for entry in entries), default=0)
    return NotificationMessage(
        title=f"Daily Regulatory Digest ({len(entries)} updates)",
        summary=summary,
        category="Digest",
        score=int(top),
        confidence="",
        url="",
        source="digest",
        published=datetime.now(timezone.utc),
        content_variant="digest-template",
        digest_items=entries,
    )
