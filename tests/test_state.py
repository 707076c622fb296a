from __future__ import annotations

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from regalert.decisions import Channel, NotificationPlan
from regalert.normalizer import NormalizedEvent, RateDelta
from regalert.scoring import Category, Confidence, ScoredEvent
from regalert.state import EventStore, State, load_state, prune_signatures, save_state


NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def _make_entry(index: int = 0, digest: bool = False) -> tuple[ScoredEvent, NotificationPlan]:
    event = NormalizedEvent(
        source_tag="cms-pfs",
        source_record_id=f"70450-{index}",
        title="CPT 70450 reimbursement update",
        description="CT head without contrast",
        occurred_at=NOW,
        affected_codes=("70450",),
        rate_delta=RateDelta(old=100.0, new=90.0),
    )
    category = Category.DIGEST if digest else Category.URGENT
    scored = ScoredEvent(
        event=event,
        score=60 if digest else 90,
        category=category,
        confidence=Confidence.HIGH,
        reasons=("Source cms-pfs: 70",),
        strategy="adjustment",
        base_score=70,
    )
    plan = NotificationPlan(
        category=category,
        channels=frozenset() if digest else frozenset({Channel.EMAIL}),
        content_variant="digest-template" if digest else "urgent-template",
        immediate=not digest,
        digest=digest,
        reason="test",
        summary="70450: payment 100.00 -> 90.00 (-10.0%)",
    )
    return scored, plan


class StateTests(unittest.TestCase):
    def test_round_trip(self) -> None:
        state = State(last_poll=NOW, last_digest_sent=NOW - timedelta(days=1))
        store = EventStore(state)
        store.append_event(*_make_entry(digest=True), signature="abc")
        store.record_signature("abc", now=NOW)
        self.assertEqual(store.lookup_signature("abc"), NOW)
        self.assertIsNone(store.lookup_signature("missing"))
        state.cms_rates["70450"] = 90.0

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "state.json")
            save_state(path, state)
            loaded = load_state(path)

        self.assertEqual(loaded.last_poll, NOW)
        self.assertEqual(loaded.last_digest_sent, NOW - timedelta(days=1))
        self.assertEqual(loaded.signatures, {"abc": NOW})
        self.assertEqual(loaded.cms_rates, {"70450": 90.0})
        self.assertEqual(len(loaded.events), 1)
        self.assertEqual(loaded.events[0]["delta"], {"old": 100.0, "new": 90.0})
        self.assertEqual(loaded.events[0]["category"], "Digest")
        self.assertEqual(len(loaded.pending_digest), 1)

    def test_missing_file_gives_empty_state(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            state = load_state(os.path.join(tmp, "missing.json"))
        self.assertIsNone(state.last_poll)
        self.assertEqual(state.events, [])

    def test_event_log_is_capped(self) -> None:
        state = State(last_poll=None)
        store = EventStore(state, max_events=3)
        for index in range(5):
            store.append_event(*_make_entry(index))
        self.assertEqual([event["source_id"] for event in state.events], ["70450-2", "70450-3", "70450-4"])

    def test_drain_digest_empties_queue(self) -> None:
        state = State(last_poll=None)
        store = EventStore(state)
        store.append_event(*_make_entry(digest=True))
        store.append_event(*_make_entry(1))
        drained = store.drain_digest()
        self.assertEqual(len(drained), 1)
        self.assertEqual(state.pending_digest, [])

    def test_prune_keeps_table_identity(self) -> None:
        state = State(last_poll=None, signatures={"old": NOW - timedelta(days=90), "new": NOW})
        table = state.signatures
        prune_signatures(state, days=60, now=NOW)
        self.assertIs(state.signatures, table)
        self.assertEqual(set(table), {"new"})


if __name__ == "__main__":
    unittest.main()
