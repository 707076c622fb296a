from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import httpx

from .base import BaseFeed
from ..normalizer import RawSourceRecord


DEVICE_ENDPOINT = "https://api.fda.gov/device/enforcement.json"
DRUG_ENDPOINT = "https://api.fda.gov/drug/enforcement.json"
SHORTAGE_ENDPOINT = "https://api.fda.gov/drug/shortages.json"
RECALL_DETAIL_URL = "https://www.accessdata.fda.gov/scripts/cdrh/cfdocs/cfres/res.cfm?id={number}"

DEVICE_TERMS = (
    "x-ray",
    "CT",
    "MRI",
    "ultrasound",
    "mammograph",
    "radiograph",
    "fluoroscop",
)

RADIOLOGY_DRUGS = (
    "contrast",
    "gadolinium",
    "iodine",
    "barium",
    "lidocaine",
    "propofol",
    "midazolam",
    "fentanyl",
    "omnipaque",
    "visipaque",
    "isovue",
    "optiray",
    "gadavist",
    "dotarem",
    "prohance",
    "multihance",
)


@dataclass
class OpenFDASettings:
    kind: str
    max_results: int
    timeout_seconds: int
    user_agent: str


class OpenFDAEnforcementFeed(BaseFeed):
    """Device or drug enforcement reports narrowed to radiology terms."""

    def __init__(self, settings: OpenFDASettings) -> None:
        if settings.kind not in {"device", "drug"}:
            raise ValueError("OpenFDA feed kind must be 'device' or 'drug'")
        self._settings = settings
        self.name = f"openfda-{settings.kind}"
        self._logger = logging.getLogger(__name__)

    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        start = since or (datetime.now(timezone.utc) - timedelta(days=1))
        if self._settings.kind == "device":
            endpoint, terms, source = DEVICE_ENDPOINT, DEVICE_TERMS, "fda-device-recall"
        else:
            endpoint, terms, source = DRUG_ENDPOINT, RADIOLOGY_DRUGS, "fda-drug-recall"
        search = "+OR+".join(f'product_description:"{term}"' for term in terms)
        params = {
            "search": f"({search})+AND+report_date:[{start:%Y%m%d}+TO+{datetime.now(timezone.utc):%Y%m%d}]",
            "sort": "report_date:desc",
            "limit": self._settings.max_results,
        }
        payload = await _get_json(endpoint, params, self._settings)
        records: list[RawSourceRecord] = []
        for entry in payload.get("results", []):
            record = dict(entry)
            record["source"] = source
            number = entry.get("recall_number")
            if number:
                record.setdefault("url", RECALL_DETAIL_URL.format(number=number))
            records.append(record)
        self._logger.debug("%s returned %s records", self.name, len(records))
        return records


class DrugShortageFeed(BaseFeed):
    name = "fda-drug-shortages"

    def __init__(self, settings: OpenFDASettings) -> None:
        self._settings = settings
        self._logger = logging.getLogger(__name__)

    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        payload = await _get_json(SHORTAGE_ENDPOINT, {"limit": self._settings.max_results}, self._settings)
        records: list[RawSourceRecord] = []
        for entry in payload.get("results", []):
            name = str(entry.get("generic_name") or "").lower()
            if not any(drug in name for drug in RADIOLOGY_DRUGS):
                continue
            record = dict(entry)
            record["source"] = "fda-drug-shortage"
            records.append(record)
        return records


async def _get_json(endpoint: str, params: dict[str, Any], settings: OpenFDASettings) -> dict[str, Any]:
    headers = {"User-Agent": settings.user_agent}
    # openFDA expects literal '+' separators in the search expression
    query = "&".join(f"{key}={value}" for key, value in params.items())
    async with httpx.AsyncClient(timeout=settings.timeout_seconds) as client:
        response = await client.get(f"{endpoint}?{query}", headers=headers)
        if response.status_code == 404:
            # openFDA answers "no matches" with a 404
            return {}
        response.raise_for_status()
        payload = response.json()
    if not isinstance(payload, dict):
        return {}
    return payload
