from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import logging
import statistics
from typing import Any, Sequence

import httpx

from .config import ScoringConfig
from .decisions import Channel, NotificationPlan, RoutingPreferences, decide_routing
from .dedupe import DedupeEngine, event_signature
from .enrichment import BaseEnricher, EnrichmentError, fallback_digest
from .feeds.base import BaseFeed
from .normalizer import NormalizedEvent, RawSourceRecord, normalize
from .notifiers.base import BaseNotifier
from .notifiers.factory import build_digest_message, build_notification_message
from .notifiers.message import NotificationMessage
from .quota import QuotaState, try_claim_batch
from .scoring import (
    CATEGORY_RANK,
    PRIMARY_RECALL_SOURCES,
    SECONDARY_SOURCES,
    Category,
    ScoredEvent,
    ScoringContext,
    ScoringStrategy,
    SpikeSignal,
    should_summarize,
)
from .state import EventStore, prune_signatures


DIGEST_BATCH = "daily-digest"
SPIKE_HISTORY_DAYS = 7

_RECOVERABLE = (EnrichmentError, asyncio.TimeoutError, httpx.HTTPError)


@dataclass
class PipelineSettings:
    enrichment_timeout_seconds: float = 15.0
    notify_timeout_seconds: float = 20.0
    max_notifications_per_run: int = 25
    signature_retention_days: int = 60


@dataclass
class PollResult:
    fetched: int = 0
    duplicates: int = 0
    suppressed: int = 0
    failed: int = 0
    notified: int = 0
    digest_sent: bool = False
    planned: list[tuple[ScoredEvent, NotificationPlan]] = field(default_factory=list)


def build_context(config: ScoringConfig) -> ScoringContext:
    return ScoringContext(
        target_jurisdiction=config.target_jurisdiction,
        jurisdiction_aliases=tuple(alias.lower() for alias in config.jurisdiction_aliases),
        domain_keywords=tuple(keyword.lower() for keyword in config.domain_keywords),
        personalization=frozenset(term.lower() for term in config.personalization),
        tracked_drugs=frozenset(drug.lower() for drug in config.tracked_drugs),
    )


class Pipeline:
    """
    Runs one poll: fetch, normalize, score, dedupe, route, enrich, persist, send.

    Shared state (signature table, quota, event log) is owned by the injected
    collaborators; each takes its own lock for the in-memory decision only, so
    no lock is ever held while a feed, the enricher or a notifier is awaited.
    """

    def __init__(
        self,
        feeds: Sequence[BaseFeed],
        strategy: ScoringStrategy,
        context: ScoringContext,
        store: EventStore,
        dedupe: DedupeEngine,
        quota: QuotaState,
        notifiers: dict[Channel, list[BaseNotifier]] | None = None,
        enricher: BaseEnricher | None = None,
        preferences: RoutingPreferences | None = None,
        settings: PipelineSettings | None = None,
        dry_run: bool = False,
    ) -> None:
        self._feeds = list(feeds)
        self._strategy = strategy
        self._context = context
        self._store = store
        self._dedupe = dedupe
        self._quota = quota
        self._notifiers = notifiers or {}
        self._enricher = enricher
        self._preferences = preferences or RoutingPreferences()
        self._settings = settings or PipelineSettings()
        self._dry_run = dry_run
        self._logger = logging.getLogger(__name__)

    async def poll_once(self, now: datetime | None = None) -> PollResult:
        current = now or datetime.now(timezone.utc)
        since = self._store.state.last_poll

        tasks = [feed.fetch_recent(since=since) for feed in self._feeds]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        batches: list[list[RawSourceRecord]] = []
        for feed, feed_result in zip(self._feeds, results):
            if isinstance(feed_result, Exception):
                self._logger.error("Feed %s failed: %s", feed.name, feed_result)
                continue
            self._logger.debug("Feed %s returned %s records", feed.name, len(feed_result))
            batches.append(feed_result)

        result = await self.process_batches(batches, now=current)

        if not self._dry_run:
            result.digest_sent = await self.flush_digest(now=current)
            self._store.state.last_poll = current
            prune_signatures(self._store.state, self._settings.signature_retention_days, current)
            self._logger.info(
                "Poll complete: %s fetched, %s planned, %s notified, %s duplicates, %s suppressed, %s failed",
                result.fetched,
                len(result.planned),
                result.notified,
                result.duplicates,
                result.suppressed,
                result.failed,
            )
        else:
            self._logger.info(
                "Dry-run complete: %s fetched, %s planned", result.fetched, len(result.planned)
            )
        return result

    async def process_batches(
        self,
        batches: Sequence[Sequence[RawSourceRecord]],
        now: datetime | None = None,
    ) -> PollResult:
        """Process per-source batches, each in arrival order, then send immediate plans."""
        current = now or datetime.now(timezone.utc)
        result = PollResult()

        normalized: list[list[NormalizedEvent]] = []
        for batch in batches:
            result.fetched += len(batch)
            events: list[NormalizedEvent] = []
            for raw in batch:
                try:
                    events.append(normalize(raw, now=current))
                except Exception:
                    self._logger.exception("Failed to normalize record from %s", _source_of(raw))
                    result.failed += 1
            normalized.append(events)

        flat = [event for events in normalized for event in events]
        corroboration = _corroboration(flat)
        counts: dict[str, int] = {}
        for event in flat:
            counts[event.source_tag] = counts.get(event.source_tag, 0) + 1
        spikes = {
            source: _spike_signal(self._store.state.events, source, count, current)
            for source, count in counts.items()
        }

        for events in normalized:
            for event in events:
                try:
                    outcome = await self.process_event(
                        event,
                        corroboration.get(event.key, (False, False)),
                        spikes.get(event.source_tag),
                        current,
                    )
                except Exception:
                    self._logger.exception("Failed to process %s:%s", event.source_tag, event.source_record_id)
                    result.failed += 1
                    continue
                if outcome == "duplicate":
                    result.duplicates += 1
                elif outcome == "suppressed":
                    result.suppressed += 1
                elif outcome is not None:
                    result.planned.append(outcome)

        if not self._dry_run:
            result.notified = await self._dispatch(result.planned)
        return result

    async def process_event(
        self,
        event: NormalizedEvent,
        corroboration: tuple[bool, bool] = (False, False),
        spike: SpikeSignal | None = None,
        now: datetime | None = None,
    ) -> tuple[ScoredEvent, NotificationPlan] | str | None:
        current = now or datetime.now(timezone.utc)
        secondary_signal, primary_recall = corroboration
        context = replace(
            self._context,
            secondary_signal=secondary_signal,
            primary_recall=primary_recall,
            spike=spike,
        )
        scored = self._strategy.score(event, context)
        signature = event_signature(event)

        if self._dry_run:
            duplicate = self._dedupe.peek(signature, current)
        else:
            duplicate = self._dedupe.check_and_record(signature, current)
        if duplicate:
            self._logger.debug("Dropping duplicate %s:%s", event.source_tag, event.source_record_id)
            return "duplicate"

        if scored.category == Category.SUPPRESSED:
            self._logger.debug(
                "Suppressed %s:%s (score %s)", event.source_tag, event.source_record_id, scored.score
            )
            return "suppressed"

        plan = decide_routing(scored, self._quota, self._preferences, current, consume=not self._dry_run)
        if self._dry_run:
            self._logger.info(
                "[dry-run] %s %s (%s): %s", scored.category.value, event.title, scored.score, plan.reason
            )
            return scored, plan

        try:
            plan = await self._enrich(scored, plan)
            self._store.append_event(scored, plan, signature)
        except BaseException:
            # an unpersisted event must stay eligible for the next poll
            self._dedupe.discard(signature)
            raise
        return scored, plan

    async def flush_digest(self, now: datetime | None = None) -> bool:
        """Send the queued digest entries at most once per day."""
        current = now or datetime.now(timezone.utc)
        if not self._store.state.pending_digest:
            return False
        if not try_claim_batch(self._quota, DIGEST_BATCH, current):
            return False

        entries = self._store.drain_digest()
        summary = fallback_digest(entries)
        if self._enricher is not None:
            try:
                summary = await asyncio.wait_for(
                    self._enricher.summarize_digest(entries),
                    timeout=self._settings.enrichment_timeout_seconds,
                )
            except _RECOVERABLE as exc:
                self._logger.warning("Digest summary failed, using fallback: %s", exc)
            except Exception:
                self._logger.exception("Digest enricher error, using fallback")

        message = build_digest_message(entries, summary)
        delivered = await self._send(message, Channel.EMAIL, "digest")
        self._store.state.last_digest_sent = current
        self._logger.info("Digest with %s entries %s", len(entries), "sent" if delivered else "not delivered")
        return delivered

    async def _enrich(self, scored: ScoredEvent, plan: NotificationPlan) -> NotificationPlan:
        if not plan.enrichment_granted or self._enricher is None or not should_summarize(scored.category):
            return plan
        event = scored.event
        try:
            summary = await asyncio.wait_for(
                self._enricher.summarize(event.title, event.description, scored.category),
                timeout=self._settings.enrichment_timeout_seconds,
            )
        except _RECOVERABLE as exc:
            self._logger.warning(
                "Enrichment failed for %s:%s, using fallback: %s",
                event.source_tag,
                event.source_record_id,
                str(exc) or type(exc).__name__,
            )
            return plan
        except Exception:
            self._logger.exception(
                "Enricher error for %s:%s, using fallback", event.source_tag, event.source_record_id
            )
            return plan
        if not summary:
            return plan
        return replace(plan, summary=summary, summary_source="enrichment")

    async def _dispatch(self, planned: list[tuple[ScoredEvent, NotificationPlan]]) -> int:
        immediate = [item for item in planned if item[1].immediate and item[1].channels]
        immediate.sort(key=lambda item: (CATEGORY_RANK[item[0].category], item[0].event.occurred_at))

        notified = 0
        for scored, plan in immediate:
            if notified >= self._settings.max_notifications_per_run:
                self._logger.warning(
                    "Reached max_notifications_per_run=%s; stopping early",
                    self._settings.max_notifications_per_run,
                )
                break
            message = build_notification_message(scored, plan)
            label = f"{scored.event.source_tag}:{scored.event.source_record_id}"
            delivered = False
            for channel in sorted(plan.channels, key=lambda item: item.value):
                delivered = await self._send(message, channel, label) or delivered
            if delivered:
                self._logger.info("Notified %s for %s", scored.category.value, label)
                notified += 1
        return notified

    async def _send(self, message: NotificationMessage, channel: Channel, label: str) -> bool:
        notifiers = self._notifiers.get(channel, [])
        if not notifiers:
            self._logger.warning("No %s notifier configured; skipping %s", channel.value, label)
            return False
        sent = True
        for notifier in notifiers:
            try:
                success = await asyncio.wait_for(
                    notifier.send(message), timeout=self._settings.notify_timeout_seconds
                )
            except Exception as exc:
                self._logger.error("Notifier %s failed for %s: %s", type(notifier).__name__, label, exc)
                success = False
            sent = sent and success
        return sent


def _corroboration(events: Sequence[NormalizedEvent]) -> dict[tuple[str, str], tuple[bool, bool]]:
    """Pair primary recalls and secondary reports that name the same manufacturer."""
    primary = {_party(event) for event in events if event.source_tag in PRIMARY_RECALL_SOURCES}
    secondary = {_party(event) for event in events if event.source_tag in SECONDARY_SOURCES}
    primary.discard("")
    secondary.discard("")

    flags: dict[tuple[str, str], tuple[bool, bool]] = {}
    for event in events:
        party = _party(event)
        if not party:
            continue
        if event.source_tag in PRIMARY_RECALL_SOURCES and party in secondary:
            flags[event.key] = (True, False)
        elif event.source_tag in SECONDARY_SOURCES and party in primary:
            flags[event.key] = (False, True)
    return flags


def _spike_signal(
    history: Sequence[dict[str, Any]],
    source: str,
    current_count: int,
    now: datetime,
    days: int = SPIKE_HISTORY_DAYS,
) -> SpikeSignal | None:
    today = now.astimezone(timezone.utc).date()
    window = [today - timedelta(days=offset) for offset in range(1, days + 1)]
    daily = {day: 0 for day in window}
    for record in history:
        if record.get("source") != source:
            continue
        day = _record_day(record.get("occurred_at"))
        if day in daily:
            daily[day] += 1
    counts = list(daily.values())
    if not any(counts):
        return None
    return SpikeSignal(
        current_count=current_count,
        historical_mean=statistics.fmean(counts),
        historical_stddev=statistics.pstdev(counts),
    )


def _record_day(value: Any):
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).date()


def _party(event: NormalizedEvent) -> str:
    return " ".join((event.manufacturer or "").lower().split())


def _source_of(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("source", "unknown"))
    return "unknown"
