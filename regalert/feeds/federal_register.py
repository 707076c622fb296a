from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

import httpx

from .base import BaseFeed
from ..normalizer import RawSourceRecord


FEDERAL_REGISTER_ENDPOINT = "https://www.federalregister.gov/api/v1/documents.json"


@dataclass
class FederalRegisterSettings:
    term: str
    max_results: int
    timeout_seconds: int
    user_agent: str


class FederalRegisterFeed(BaseFeed):
    name = "federal-register"

    def __init__(self, settings: FederalRegisterSettings) -> None:
        self._settings = settings
        self._logger = logging.getLogger(__name__)

    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        start = since or (datetime.now(timezone.utc) - timedelta(days=1))
        params = {
            "conditions[term]": self._settings.term,
            "conditions[publication_date][gte]": start.date().isoformat(),
            "order": "newest",
            "per_page": min(self._settings.max_results, 1000),
        }
        headers = {"User-Agent": self._settings.user_agent}

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            response = await client.get(FEDERAL_REGISTER_ENDPOINT, params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()

        records: list[RawSourceRecord] = []
        for entry in payload.get("results", []) or []:
            if not entry.get("document_number"):
                continue
            record = dict(entry)
            record["source"] = "federal-register"
            records.append(record)
        return records
