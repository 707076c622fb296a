from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import asyncio
from email.utils import parsedate_to_datetime
import logging
import xml.etree.ElementTree as ET

import httpx

from .base import BaseFeed
from ..normalizer import RawSourceRecord


@dataclass
class RSSSource:
    name: str
    url: str
    source: str


@dataclass
class RSSSettings:
    sources: list[RSSSource]
    timeout_seconds: int
    user_agent: str


class RSSFeed(BaseFeed):
    """State bulletin and vendor advisory feeds published as RSS or Atom."""

    def __init__(self, settings: RSSSettings, name: str = "rss") -> None:
        self._settings = settings
        self.name = name
        self._logger = logging.getLogger(__name__)

    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        if not self._settings.sources:
            return []
        start = since or (datetime.now(timezone.utc) - timedelta(days=1))
        headers = {"User-Agent": self._settings.user_agent}

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            tasks = [
                _fetch_source(client, source, headers, start) for source in self._settings.sources
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        records: list[RawSourceRecord] = []
        for source, result in zip(self._settings.sources, results):
            if isinstance(result, Exception):
                self._logger.warning("RSS fetch failed for %s: %s", source.name, result)
                continue
            records.extend(result)
        return records


async def _fetch_source(
    client: httpx.AsyncClient,
    source: RSSSource,
    headers: dict[str, str],
    since: datetime,
) -> list[RawSourceRecord]:
    response = await client.get(source.url, headers=headers)
    response.raise_for_status()
    return parse_feed(source, response.text, since)


def parse_feed(source: RSSSource, payload: str, since: datetime) -> list[RawSourceRecord]:
    root = ET.fromstring(payload)
    tag = _strip_namespace(root.tag)
    if tag == "rss":
        entries = _rss_entries(root)
    elif tag == "feed":
        entries = _atom_entries(root)
    else:
        return []

    records: list[RawSourceRecord] = []
    for entry_id, title, description, link, published in entries:
        if published < since:
            continue
        record: RawSourceRecord = {
            "source": source.source,
            "id": f"{source.name}:{entry_id or link or title}",
            "title": title,
            "description": description,
            "link": link,
            "published": published.isoformat(),
        }
        if source.source == "vendor-advisory":
            record["vendor"] = source.name
        records.append(record)
    return records


def _rss_entries(root: ET.Element) -> list[tuple[str, str, str, str, datetime]]:
    channel = root.find("channel")
    if channel is None:
        return []
    entries = []
    for item in channel.findall("item"):
        title = _text(item, "title") or ""
        link = _text(item, "link") or ""
        entries.append(
            (
                _text(item, "guid") or "",
                title,
                _text(item, "description") or "",
                link,
                _parse_pubdate(_text(item, "pubDate")),
            )
        )
    return entries


def _atom_entries(root: ET.Element) -> list[tuple[str, str, str, str, datetime]]:
    entries = []
    for entry in root.findall("{*}entry"):
        entries.append(
            (
                _text(entry, "id") or "",
                _text(entry, "title") or "",
                _text(entry, "summary") or _text(entry, "content") or "",
                _atom_link(entry),
                _parse_iso(_text(entry, "updated") or _text(entry, "published")),
            )
        )
    return entries


def _atom_link(entry: ET.Element) -> str:
    for link in entry.findall("{*}link"):
        href = link.attrib.get("href")
        if href:
            return href
    return ""


def _parse_pubdate(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return _parse_iso(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_iso(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _text(node: ET.Element, tag: str) -> str | None:
    child = node.find(tag)
    if child is None:
        child = node.find(f"{{*}}{tag}")
    if child is None or child.text is None:
        return None
    return child.text.strip()


def _strip_namespace(tag: str) -> str:
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag
