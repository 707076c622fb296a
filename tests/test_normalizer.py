from __future__ import annotations

import unittest
from datetime import datetime, timezone

from regalert.normalizer import UNKNOWN_SOURCE, normalize, normalize_source_tag


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class NormalizerTests(unittest.TestCase):
    def test_malformed_inputs_never_raise(self) -> None:
        samples = [
            None,
            {},
            {"source": 42},
            {"source": "fda-device-recall", "title": {"nested": True}},
            {"source": "cms-pfs", "old_rate": "abc", "new_rate": None},
            {"source": "federal-register", "agencies": "FDA", "publication_date": "not a date"},
            {"source": "vendor-advisory", "affectedProducts": "not a list"},
            {"source": "cms-pfs", "code": "70553", "old_rate": 10**400, "new_rate": 1},
            {"source": "cdph", "title": "Bulletin", "date": "0001-01-01T00:00:00+05:00"},
        ]
        for raw in samples:
            event = normalize(raw, now=NOW)
            self.assertTrue(event.source_record_id)
            self.assertTrue(event.title)

    def test_empty_record_defaults(self) -> None:
        event = normalize(None, now=NOW)
        self.assertEqual(event.source_tag, UNKNOWN_SOURCE)
        self.assertEqual(event.description, "")
        self.assertEqual(event.occurred_at, NOW)
        self.assertEqual(event.title, f"unknown record {event.source_record_id}")

    def test_out_of_range_values_fall_back(self) -> None:
        event = normalize({"source": "cms-pfs", "code": "70553", "old_rate": 10**400, "new_rate": 1}, now=NOW)
        self.assertIsNone(event.rate_delta)

        event = normalize({"source": "cdph", "title": "Bulletin", "date": "0001-01-01T00:00:00+05:00"}, now=NOW)
        self.assertEqual(event.occurred_at, NOW)

    def test_content_id_is_stable(self) -> None:
        raw = {"source": "cdph", "title": "Bulletin without id"}
        self.assertEqual(
            normalize(raw, now=NOW).source_record_id,
            normalize(dict(raw), now=NOW).source_record_id,
        )

    def test_openfda_enforcement_record(self) -> None:
        event = normalize(
            {
                "source": "openfda",
                "recall_number": "Z-1234-2024",
                "product_description": "CT scanner model X",
                "classification": "Class II",
                "report_date": "20240115",
                "recalling_firm": "Acme Imaging",
                "reason_for_recall": "Software error.",
                "product_code": "JAK",
            },
            now=NOW,
        )
        self.assertEqual(event.source_tag, "fda-device-recall")
        self.assertEqual(event.source_record_id, "Z-1234-2024")
        self.assertEqual(event.title, "Class II Recall: CT scanner model X")
        self.assertEqual(event.occurred_at, datetime(2024, 1, 15, tzinfo=timezone.utc))
        self.assertEqual(event.manufacturer, "Acme Imaging")
        self.assertEqual(event.device_descriptor, "CT scanner model X")
        self.assertEqual(event.affected_codes, ("JAK",))

    def test_cms_record_carries_rate_delta(self) -> None:
        event = normalize(
            {
                "source": "cms-pfs",
                "cpt_code": "70450",
                "description": "CT head without contrast",
                "old_rate": 100,
                "new_rate": 90,
                "year": 2025,
            },
            now=NOW,
        )
        self.assertEqual(event.source_record_id, "70450-2025")
        self.assertEqual(event.affected_codes, ("70450",))
        self.assertIsNotNone(event.rate_delta)
        self.assertAlmostEqual(event.rate_delta.percent_change, -10.0)

    def test_vendor_advisory_is_flagged(self) -> None:
        event = normalize(
            {
                "source": "vendor-advisory",
                "id": "adv-1",
                "vendor": "GE Healthcare",
                "title": "Service notice",
                "affectedProducts": ["Revolution CT", "Optima CT"],
            },
            now=NOW,
        )
        self.assertTrue(event.advisory)
        self.assertEqual(event.title, "GE Healthcare: Service notice")
        self.assertEqual(event.device_descriptor, "Revolution CT, Optima CT")

    def test_title_falls_back_to_first_sentence(self) -> None:
        event = normalize({"source": "rhb", "id": "b1", "description": "Registration rule change. Details follow."})
        self.assertEqual(event.title, "Registration rule change")
        self.assertEqual(event.jurisdiction_tag, "CA")

    def test_source_tag_aliases(self) -> None:
        self.assertEqual(normalize_source_tag("CMS"), "cms-pfs")
        self.assertEqual(normalize_source_tag(" fedreg "), "federal-register")
        self.assertEqual(normalize_source_tag("twitter"), UNKNOWN_SOURCE)
        self.assertEqual(normalize_source_tag(None), UNKNOWN_SOURCE)


if __name__ == "__main__":
    unittest.main()
