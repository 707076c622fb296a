from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .enrichment import fallback_summary
from .quota import QuotaState, remaining, try_consume
from .scoring import Category, ScoredEvent


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


CONTENT_VARIANTS = {
    Category.URGENT: "urgent-template",
    Category.INFORMATIONAL: "informational-template",
    Category.DIGEST: "digest-template",
    Category.IMPORTANT: "important-template",
    Category.SUPPRESSED: None,
}


@dataclass(frozen=True)
class RoutingPreferences:
    sms_opt_in: bool = False
    informational_email: bool = True
    informational_reserve: int = 0


@dataclass(frozen=True)
class NotificationPlan:
    category: Category
    channels: frozenset[Channel]
    content_variant: str | None
    immediate: bool
    digest: bool
    reason: str
    enrichment: str | None = None
    enrichment_granted: bool = False
    summary: str = ""
    summary_source: str = "fallback"
    recipients_resolved: None = None

    @property
    def is_empty(self) -> bool:
        return not self.channels and not self.digest


def decide_routing(
    scored: ScoredEvent,
    quota: QuotaState,
    preferences: RoutingPreferences | None = None,
    now: datetime | None = None,
    consume: bool = True,
) -> NotificationPlan:
    """
    Map a scored event's terminal category to a notification plan.

    Enrichment budget is consumed here, under the quota lock, but the
    enrichment call itself belongs to the caller. Every immediate plan
    already carries the rule-based summary so a denied or failed enrichment
    never leaves it without content. With `consume=False` the grant only
    reports whether budget is left; the quota is not touched.
    """
    prefs = preferences or RoutingPreferences()
    category = scored.category
    variant = CONTENT_VARIANTS[category]

    if category == Category.SUPPRESSED:
        return NotificationPlan(
            category=category,
            channels=frozenset(),
            content_variant=None,
            immediate=False,
            digest=False,
            reason="suppressed: below digest threshold",
        )

    summary = fallback_summary(scored.event, category)

    if category == Category.DIGEST:
        return NotificationPlan(
            category=category,
            channels=frozenset(),
            content_variant=variant,
            immediate=False,
            digest=True,
            reason="digest: batched into periodic summary",
            summary=summary,
        )

    if category == Category.URGENT:
        channels = {Channel.EMAIL}
        if prefs.sms_opt_in:
            channels.add(Channel.SMS)
        granted = _grant(quota, now, 0, consume)
        return NotificationPlan(
            category=category,
            channels=frozenset(channels),
            content_variant=variant,
            immediate=True,
            digest=False,
            reason="urgent: immediate email" + (" + sms" if prefs.sms_opt_in else ""),
            enrichment="priority",
            enrichment_granted=granted,
            summary=summary,
        )

    if category == Category.INFORMATIONAL:
        if not prefs.informational_email:
            return NotificationPlan(
                category=category,
                channels=frozenset(),
                content_variant=variant,
                immediate=False,
                digest=True,
                reason="informational: email disabled, routed to digest",
                summary=summary,
            )
        granted = _grant(quota, now, prefs.informational_reserve, consume)
        return NotificationPlan(
            category=category,
            channels=frozenset({Channel.EMAIL}),
            content_variant=variant,
            immediate=True,
            digest=False,
            reason="informational: immediate email",
            enrichment="opportunistic",
            enrichment_granted=granted,
            summary=summary,
        )

    return NotificationPlan(
        category=category,
        channels=frozenset({Channel.EMAIL}),
        content_variant=variant,
        immediate=True,
        digest=False,
        reason="important: vendor/operational advisory",
        summary=summary,
    )


def _grant(quota: QuotaState, now: datetime | None, reserve: int, consume: bool) -> bool:
    if consume:
        return try_consume(quota, now, reserve=reserve)
    return remaining(quota, now) > max(reserve, 0)
