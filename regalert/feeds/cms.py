from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

import httpx

from .base import BaseFeed
from ..normalizer import RawSourceRecord


@dataclass
class CMSSettings:
    url: str
    timeout_seconds: int
    user_agent: str


class CMSFeeScheduleFeed(BaseFeed):
    """
    Diffs a published fee-schedule snapshot against the previous one.

    `previous_rates` is the persisted code -> rate map; it is updated in
    place so the next poll compares against this one. The first poll only
    records a baseline.
    """

    name = "cms-pfs"

    def __init__(self, settings: CMSSettings, previous_rates: dict[str, float]) -> None:
        self._settings = settings
        self._previous = previous_rates
        self._logger = logging.getLogger(__name__)

    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        headers = {"User-Agent": self._settings.user_agent}
        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            response = await client.get(self._settings.url, headers=headers)
            response.raise_for_status()
            payload = response.json()

        rows = payload.get("rates", []) if isinstance(payload, dict) else payload
        current = _parse_rates(rows)
        baseline = not self._previous
        records = [] if baseline else diff_rates(self._previous, current)
        self._previous.clear()
        self._previous.update({code: row["rate"] for code, row in current.items()})
        if baseline:
            self._logger.info("Recorded CMS baseline with %s codes", len(current))
        return records


def diff_rates(previous: dict[str, float], current: dict[str, dict[str, Any]]) -> list[RawSourceRecord]:
    stamp = datetime.now(timezone.utc).date().isoformat()
    records: list[RawSourceRecord] = []
    for code, row in current.items():
        old_rate = previous.get(code)
        new_rate = row["rate"]
        if old_rate is None or old_rate == new_rate:
            continue
        records.append(
            {
                "source": "cms-pfs",
                "id": f"cms-pfs-{code}-{stamp}",
                "cpt_code": code,
                "description": row.get("description") or "",
                "old_rate": old_rate,
                "new_rate": new_rate,
                "locality": row.get("locality"),
                "effective_date": row.get("effective_date"),
                "year": row.get("year"),
            }
        )
    return records


def _parse_rates(rows: Any) -> dict[str, dict[str, Any]]:
    parsed: dict[str, dict[str, Any]] = {}
    if not isinstance(rows, list):
        return parsed
    for row in rows:
        if not isinstance(row, dict):
            continue
        code = row.get("cpt_code") or row.get("code")
        rate = row.get("rate", row.get("payment_rate"))
        if not code or rate is None:
            continue
        try:
            parsed[str(code)] = {**row, "rate": float(rate)}
        except (TypeError, ValueError):
            continue
    return parsed
