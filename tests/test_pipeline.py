from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timezone

import httpx

from regalert.decisions import Channel
from regalert.dedupe import DedupeEngine
from regalert.enrichment import BaseEnricher, EnrichmentError
from regalert.feeds.base import BaseFeed
from regalert.notifiers.base import BaseNotifier
from regalert.notifiers.message import NotificationMessage
from regalert.pipeline import Pipeline, PipelineSettings
from regalert.quota import new_quota
from regalert.scoring import AdditiveStrategy, AdjustmentStrategy, Category, Confidence, ScoringContext
from regalert.state import EventStore, State


NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)

URGENT_RECORD = {
    "source": "fda-device-recall",
    "recall_number": "Z-0100-2024",
    "product_description": "CT scanner",
    "classification": "Class I",
    "reason_for_recall": "Software malfunction may cause serious injury during CT imaging",
    "recalling_firm": "Acme Imaging",
    "distribution_pattern": "Nationwide including CA",
    "report_date": "20240314",
}

INFORMATIONAL_RECORD = {
    "source": "fda-device-recall",
    "recall_number": "Z-0101-2024",
    "product_description": "Ultrasound probe",
    "classification": "Class II",
    "reason_for_recall": "Probe malfunction",
    "recalling_firm": "Beta Medical",
    "distribution_pattern": "Nationwide including CA",
    "report_date": "20240314",
}

DIGEST_RECORD = {
    "source": "federal-register",
    "document_number": "2024-0001",
    "title": "Medicare program; radiology payment policies",
    "abstract": "Proposed rule on imaging services",
    "publication_date": "2024-03-14",
}

SUPPRESSED_RECORD = {
    "source": "payer-bulletin",
    "id": "pb-1",
    "title": "Office hours update",
    "description": "Closed for holiday",
}


class _StaticFeed(BaseFeed):
    def __init__(self, records, name: str = "static") -> None:
        self._records = records
        self.name = name

    async def fetch_recent(self, since=None):
        return list(self._records)


class _BrokenFeed(BaseFeed):
    name = "broken"

    async def fetch_recent(self, since=None):
        raise httpx.ConnectError("connection refused")


class _RecordingNotifier(BaseNotifier):
    def __init__(self, channel: Channel = Channel.EMAIL) -> None:
        self.channel = channel
        self.messages: list[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> bool:
        self.messages.append(message)
        return True


class _FailingEnricher(BaseEnricher):
    def __init__(self) -> None:
        self.calls = 0

    async def summarize(self, title, description, category):
        self.calls += 1
        raise EnrichmentError("service unavailable")


class _BrokenEnricher(BaseEnricher):
    def __init__(self) -> None:
        self.calls = 0

    async def summarize(self, title, description, category):
        self.calls += 1
        raise RuntimeError("unexpected payload shape")

    async def summarize_digest(self, entries):
        raise RuntimeError("unexpected payload shape")


class _FlakyStore(EventStore):
    def __init__(self, state: State, failures: int = 1) -> None:
        super().__init__(state)
        self.failures = failures

    def append_event(self, scored, plan, signature=""):
        if self.failures:
            self.failures -= 1
            raise OSError("disk full")
        return super().append_event(scored, plan, signature)


class _SlowEnricher(BaseEnricher):
    async def summarize(self, title, description, category):
        await asyncio.sleep(1)
        return "too late"


class _StaticEnricher(BaseEnricher):
    async def summarize(self, title, description, category):
        return "Stop using the affected scanner until patched."

    async def summarize_digest(self, entries):
        return f"{len(entries)} regulatory updates today."


def _make_pipeline(
    feeds=(),
    strategy=None,
    notifier: _RecordingNotifier | None = None,
    enricher: BaseEnricher | None = None,
    daily_limit: int = 6,
    dry_run: bool = False,
    store: EventStore | None = None,
) -> tuple[Pipeline, State]:
    store = store or EventStore(State(last_poll=None))
    state = store.state
    notifiers = {notifier.channel: [notifier]} if notifier else {}
    pipeline = Pipeline(
        feeds=list(feeds),
        strategy=strategy or AdditiveStrategy(),
        context=ScoringContext(),
        store=store,
        dedupe=DedupeEngine(store.signatures),
        quota=new_quota(daily_limit, now=NOW),
        notifiers=notifiers,
        enricher=enricher,
        settings=PipelineSettings(enrichment_timeout_seconds=0.05, notify_timeout_seconds=1),
        dry_run=dry_run,
    )
    return pipeline, state


class PipelineTests(unittest.IsolatedAsyncioTestCase):
    async def test_urgent_with_failing_enrichment_uses_fallback(self) -> None:
        notifier = _RecordingNotifier()
        enricher = _FailingEnricher()
        pipeline, state = _make_pipeline(notifier=notifier, enricher=enricher)

        result = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)

        self.assertEqual(enricher.calls, 1)
        self.assertEqual(len(result.planned), 1)
        scored, plan = result.planned[0]
        self.assertEqual(scored.category, Category.URGENT)
        self.assertFalse(plan.is_empty)
        self.assertEqual(plan.summary_source, "fallback")
        self.assertTrue(plan.summary.startswith("URGENT: "))
        self.assertEqual(len(notifier.messages), 1)
        self.assertEqual(notifier.messages[0].summary, plan.summary)
        self.assertEqual(len(state.events), 1)

    async def test_unexpected_enricher_error_uses_fallback(self) -> None:
        notifier = _RecordingNotifier()
        enricher = _BrokenEnricher()
        pipeline, state = _make_pipeline(notifier=notifier, enricher=enricher)

        result = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)

        self.assertEqual(enricher.calls, 1)
        self.assertEqual(result.failed, 0)
        self.assertEqual(len(result.planned), 1)
        self.assertEqual(result.planned[0][1].summary_source, "fallback")
        self.assertEqual(len(notifier.messages), 1)
        self.assertEqual(len(state.events), 1)

    async def test_unpersisted_event_is_retried_next_poll(self) -> None:
        notifier = _RecordingNotifier()
        store = _FlakyStore(State(last_poll=None))
        pipeline, state = _make_pipeline(notifier=notifier, store=store)

        first = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)
        self.assertEqual(first.failed, 1)
        self.assertEqual(first.planned, [])
        self.assertEqual(state.signatures, {})

        second = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)
        self.assertEqual(second.duplicates, 0)
        self.assertEqual(len(second.planned), 1)
        self.assertEqual(len(state.events), 1)
        self.assertEqual(len(state.signatures), 1)

    async def test_bulletins_without_description_are_not_duplicates(self) -> None:
        bulletins = [
            {"source": "cdph", "id": "cdph-1", "title": "Radiation machine registration renewal"},
            {"source": "cdph", "id": "cdph-2", "title": "Mammography facility inspection changes"},
        ]
        pipeline, state = _make_pipeline()
        result = await pipeline.process_batches([bulletins], now=NOW)
        self.assertEqual(result.fetched, 2)
        self.assertEqual(result.duplicates, 0)
        self.assertEqual(len(state.signatures), 2)

    async def test_enrichment_timeout_falls_back(self) -> None:
        pipeline, _ = _make_pipeline(notifier=_RecordingNotifier(), enricher=_SlowEnricher())
        result = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)
        _, plan = result.planned[0]
        self.assertEqual(plan.summary_source, "fallback")
        self.assertTrue(plan.summary)

    async def test_granted_enrichment_replaces_summary(self) -> None:
        pipeline, state = _make_pipeline(notifier=_RecordingNotifier(), enricher=_StaticEnricher())
        result = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)
        _, plan = result.planned[0]
        self.assertEqual(plan.summary_source, "enrichment")
        self.assertEqual(plan.summary, "Stop using the affected scanner until patched.")
        self.assertEqual(state.events[0]["summary_source"], "enrichment")

    async def test_exhausted_quota_skips_enrichment(self) -> None:
        enricher = _FailingEnricher()
        pipeline, _ = _make_pipeline(notifier=_RecordingNotifier(), enricher=enricher, daily_limit=0)
        result = await pipeline.process_batches([[URGENT_RECORD]], now=NOW)
        self.assertEqual(enricher.calls, 0)
        self.assertFalse(result.planned[0][1].is_empty)

    async def test_duplicates_and_suppressed_are_dropped(self) -> None:
        repeat = dict(URGENT_RECORD, recall_number="Z-0102-2024")
        pipeline, state = _make_pipeline(notifier=_RecordingNotifier())
        result = await pipeline.process_batches([[URGENT_RECORD, repeat, SUPPRESSED_RECORD]], now=NOW)
        self.assertEqual(result.fetched, 3)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(result.suppressed, 1)
        self.assertEqual(len(result.planned), 1)
        self.assertEqual(len(state.events), 1)

    async def test_sends_urgent_before_informational(self) -> None:
        notifier = _RecordingNotifier()
        pipeline, _ = _make_pipeline(notifier=notifier)
        result = await pipeline.process_batches([[INFORMATIONAL_RECORD, URGENT_RECORD]], now=NOW)
        self.assertEqual(result.notified, 2)
        self.assertEqual([message.category for message in notifier.messages], ["Urgent", "Informational"])

    async def test_dry_run_neither_sends_nor_persists(self) -> None:
        notifier = _RecordingNotifier()
        pipeline, state = _make_pipeline(feeds=[_StaticFeed([URGENT_RECORD])], notifier=notifier, dry_run=True)
        result = await pipeline.poll_once(now=NOW)
        self.assertEqual(len(result.planned), 1)
        self.assertEqual(notifier.messages, [])
        self.assertEqual(state.events, [])
        self.assertEqual(state.signatures, {})
        self.assertIsNone(state.last_poll)

    async def test_dry_run_leaves_quota_untouched(self) -> None:
        pipeline, _ = _make_pipeline(
            feeds=[_StaticFeed([URGENT_RECORD, INFORMATIONAL_RECORD])],
            enricher=_StaticEnricher(),
            daily_limit=1,
            dry_run=True,
        )
        result = await pipeline.poll_once(now=NOW)
        self.assertEqual(len(result.planned), 2)
        self.assertTrue(all(plan.enrichment_granted for _, plan in result.planned))
        self.assertEqual(pipeline._quota.calls_used_today, 0)

    async def test_failing_feed_does_not_stop_poll(self) -> None:
        notifier = _RecordingNotifier()
        pipeline, state = _make_pipeline(
            feeds=[_BrokenFeed(), _StaticFeed([URGENT_RECORD])],
            notifier=notifier,
        )
        result = await pipeline.poll_once(now=NOW)
        self.assertEqual(result.fetched, 1)
        self.assertEqual(result.notified, 1)
        self.assertEqual(state.last_poll, NOW)

    async def test_digest_flushed_once_per_day(self) -> None:
        notifier = _RecordingNotifier()
        pipeline, state = _make_pipeline(
            feeds=[_StaticFeed([DIGEST_RECORD])],
            notifier=notifier,
            enricher=_StaticEnricher(),
        )
        result = await pipeline.poll_once(now=NOW)

        self.assertTrue(result.digest_sent)
        self.assertEqual(len(notifier.messages), 1)
        digest = notifier.messages[0]
        self.assertEqual(digest.content_variant, "digest-template")
        self.assertEqual(digest.summary, "1 regulatory updates today.")
        self.assertEqual(len(digest.digest_items), 1)
        self.assertEqual(state.pending_digest, [])
        self.assertEqual(state.last_digest_sent, NOW)

        state.pending_digest.append({"title": "Late item", "category": "Digest"})
        self.assertFalse(await pipeline.flush_digest(now=NOW))

    async def test_digest_survives_unexpected_enricher_error(self) -> None:
        notifier = _RecordingNotifier()
        pipeline, state = _make_pipeline(
            feeds=[_StaticFeed([DIGEST_RECORD])],
            notifier=notifier,
            enricher=_BrokenEnricher(),
        )
        result = await pipeline.poll_once(now=NOW)

        self.assertTrue(result.digest_sent)
        self.assertEqual(len(notifier.messages[0].digest_items), 1)
        self.assertEqual(state.pending_digest, [])

    async def test_recall_corroborates_shortage_report(self) -> None:
        shortage = {
            "source": "ashp-shortage",
            "id": "ashp-1",
            "generic_name": "Iohexol",
            "shortage_reason": "Manufacturing delay",
            "company_name": "Acme Imaging",
        }
        pipeline, _ = _make_pipeline(strategy=AdjustmentStrategy())
        result = await pipeline.process_batches([[URGENT_RECORD], [shortage]], now=NOW)

        by_source = {scored.event.source_tag: scored for scored, _ in result.planned}
        self.assertEqual(by_source["fda-device-recall"].score, 70)
        self.assertIn("Secondary signal: +10", by_source["fda-device-recall"].reasons)
        self.assertEqual(by_source["ashp-shortage"].confidence, Confidence.HIGH)


if __name__ == "__main__":
    unittest.main()
