from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from regalert.dedupe import DedupeEngine, compute_signature, event_signature, is_duplicate, record_signature
from regalert.normalizer import NormalizedEvent


NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)


def _make_event(description: str = "Software fault may stop image acquisition on the scanner") -> NormalizedEvent:
    return NormalizedEvent(
        source_tag="fda-device-recall",
        source_record_id="Z-0002-2024",
        title="Recall",
        description=description,
        occurred_at=NOW,
        classification_tag="Class II",
        manufacturer="Acme Imaging",
        device_descriptor="CT scanner",
    )


class DedupeTests(unittest.TestCase):
    def test_window_boundaries(self) -> None:
        signature = event_signature(_make_event())
        table: dict[str, datetime] = {}
        record_signature(signature, table, now=NOW - timedelta(days=1))
        self.assertTrue(is_duplicate(signature, table, window_days=14, now=NOW))

        table[signature] = NOW - timedelta(days=15)
        self.assertFalse(is_duplicate(signature, table, window_days=14, now=NOW))

    def test_signature_ignores_case_and_tail_of_description(self) -> None:
        first = compute_signature("Acme Imaging", "CT Scanner", "Class II", "Software fault may stop image acquisition")
        second = compute_signature("ACME  imaging", "ct scanner", "class ii", "software FAULT, may stop image. Other text")
        self.assertEqual(first, second)
        self.assertEqual(len(first), 64)

    def test_signature_differs_by_manufacturer(self) -> None:
        first = compute_signature("Acme Imaging", "CT scanner", "Class II", "Software fault")
        second = compute_signature("Other Corp", "CT scanner", "Class II", "Software fault")
        self.assertNotEqual(first, second)

    def test_records_without_description_keep_their_identity(self) -> None:
        first = NormalizedEvent(
            source_tag="cdph",
            source_record_id="cdph-1",
            title="Radiation machine registration renewal",
            description="",
            occurred_at=NOW,
        )
        second = replace(first, source_record_id="cdph-2", title="Mammography facility inspection changes")
        self.assertNotEqual(event_signature(first), event_signature(second))
        self.assertEqual(event_signature(first), event_signature(replace(first, source_record_id="cdph-9")))

    def test_description_lead_takes_precedence_over_fallback(self) -> None:
        first = compute_signature("Acme Imaging", "CT scanner", "Class II", "Software fault", fallback="Recall A")
        second = compute_signature("Acme Imaging", "CT scanner", "Class II", "Software fault", fallback="Recall B")
        self.assertEqual(first, second)
        self.assertNotEqual(
            compute_signature(None, None, None, "", fallback="Recall A"),
            compute_signature(None, None, None, "", fallback="Recall B"),
        )

    def test_discard_forgets_signature(self) -> None:
        table: dict[str, datetime] = {}
        engine = DedupeEngine(table)
        self.assertFalse(engine.check_and_record("abc", now=NOW))
        engine.discard("abc")
        engine.discard("missing")
        self.assertEqual(table, {})
        self.assertFalse(engine.check_and_record("abc", now=NOW))

    def test_engine_records_first_sighting_only(self) -> None:
        table: dict[str, datetime] = {}
        engine = DedupeEngine(table, window_days=14)
        signature = event_signature(_make_event())
        self.assertFalse(engine.check_and_record(signature, now=NOW))
        self.assertTrue(engine.check_and_record(signature, now=NOW + timedelta(days=3)))
        self.assertEqual(table[signature], NOW)

    def test_peek_does_not_record(self) -> None:
        table: dict[str, datetime] = {}
        engine = DedupeEngine(table)
        self.assertFalse(engine.peek("abc", now=NOW))
        self.assertEqual(table, {})


if __name__ == "__main__":
    unittest.main()
