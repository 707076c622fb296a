from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Any, Iterable

import httpx

from .normalizer import NormalizedEvent
from .scoring import Category


PERPLEXITY_ENDPOINT = "https://api.perplexity.ai/chat/completions"

SUMMARY_PROMPT = (
    "You are a medical regulatory expert. Provide concise, actionable summaries for "
    "radiology clinic staff. Focus on operational impact and required actions. "
    "Maximum 2 sentences."
)
DIGEST_PROMPT = (
    "Create a concise daily digest summary for radiology clinic staff. "
    "Group by importance and provide actionable insights."
)


class EnrichmentError(Exception):
    """Raised when the enrichment service cannot produce a summary."""


class BaseEnricher(ABC):
    @abstractmethod
    async def summarize(self, title: str, description: str, category: Category) -> str:
        """Return a short summary or raise EnrichmentError."""
        raise NotImplementedError

    async def summarize_digest(self, entries: list[dict[str, Any]]) -> str:
        raise EnrichmentError("Digest summarization not supported")


@dataclass
class PerplexitySettings:
    api_key: str
    model: str
    timeout_seconds: int
    user_agent: str


class PerplexityEnricher(BaseEnricher):
    def __init__(self, settings: PerplexitySettings) -> None:
        self._settings = settings
        self._logger = logging.getLogger(__name__)

    async def summarize(self, title: str, description: str, category: Category) -> str:
        label = category.value if isinstance(category, Category) else str(category)
        content = f"Summarize this {label} alert for radiology clinic operations:\n\n{title}\n{description}"
        return await self._complete(SUMMARY_PROMPT, content, max_tokens=100, temperature=0.2)

    async def summarize_digest(self, entries: list[dict[str, Any]]) -> str:
        lines = "\n".join(
            f"- {entry.get('title')} ({entry.get('source')}): {entry.get('description') or ''}"
            for entry in entries
        )
        content = f"Create a daily digest from these regulatory updates:\n\n{lines}"
        return await self._complete(DIGEST_PROMPT, content, max_tokens=500, temperature=0.3)

    async def _complete(self, system: str, content: str, max_tokens: int, temperature: float) -> str:
        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "User-Agent": self._settings.user_agent,
        }
        try:
            async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
                response = await client.post(PERPLEXITY_ENDPOINT, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EnrichmentError(f"Perplexity request failed: {exc}") from exc

        text = _first_choice(data)
        if not text:
            raise EnrichmentError("Perplexity returned an empty summary")
        return text


def fallback_summary(event: NormalizedEvent, category: Category | None = None) -> str:
    """Rule-based summary used whenever enrichment is denied or fails."""
    if event.rate_delta is not None:
        codes = ", ".join(event.affected_codes) or "Fee schedule"
        delta = event.rate_delta
        return (
            f"{codes}: payment {delta.old:.2f} -> {delta.new:.2f} "
            f"({delta.percent_change:+.1f}%)"
        )
    reason = _head(event.description) or _default_reason(event)
    party = event.manufacturer or "Unknown manufacturer"
    summary = f"{reason} - {party}"
    if category == Category.URGENT:
        return f"URGENT: {summary}"
    return summary


def fallback_digest(entries: Iterable[dict[str, Any]]) -> str:
    lines = [f"- [{entry.get('category')}] {entry.get('title')}" for entry in entries]
    if not lines:
        return "No new digest items."
    return "\n".join(lines)


def _first_choice(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content.strip() or None
    return None


def _head(text: str, limit: int = 160) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) > limit:
        return cleaned[: limit - 3] + "..."
    return cleaned


def _default_reason(event: NormalizedEvent) -> str:
    if event.source_tag.startswith("fda-") and "recall" in event.source_tag:
        return "Device recall" if event.source_tag == "fda-device-recall" else "Drug recall"
    return event.title
