from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import re
import threading
from typing import MutableMapping

from .normalizer import NormalizedEvent


DEFAULT_WINDOW_DAYS = 14
SIGNATURE_WORDS = 5

SignatureTable = MutableMapping[str, datetime]

_NON_WORD = re.compile(r"\W+")


def event_signature(event: NormalizedEvent, words: int = SIGNATURE_WORDS) -> str:
    return compute_signature(
        event.manufacturer,
        event.device_descriptor,
        event.classification_tag,
        event.description,
        words=words,
        fallback=event.title or f"{event.source_tag}:{event.source_record_id}",
    )


def compute_signature(
    manufacturer: str | None,
    device_descriptor: str | None,
    classification: str | None,
    description: str | None,
    words: int = SIGNATURE_WORDS,
    fallback: str | None = None,
) -> str:
    """
    Hash the identity parts of an event into a stable signature.

    Records without description text (bulletins, fee schedule rows, documents
    without an abstract) would otherwise share a signature with every other
    record of their kind, so `fallback` is folded in when the lead is empty.
    """
    lead = _NON_WORD.sub(" ", (description or "").lower()).split()[:words]
    parts = [
        _collapse(manufacturer),
        _collapse(device_descriptor),
        _collapse(classification),
        " ".join(lead),
    ]
    if not lead and fallback:
        parts.append(_collapse(fallback))
    normalized = "|".join(parts)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def is_duplicate(
    signature: str,
    table: SignatureTable,
    window_days: int = DEFAULT_WINDOW_DAYS,
    now: datetime | None = None,
) -> bool:
    last_seen = table.get(signature)
    if last_seen is None:
        return False
    current = _aware(now or datetime.now(timezone.utc))
    return current - _aware(last_seen) <= timedelta(days=window_days)


def record_signature(signature: str, table: SignatureTable, now: datetime | None = None) -> None:
    table[signature] = _aware(now or datetime.now(timezone.utc))


class DedupeEngine:
    """Serializes the check-then-record pair on a shared signature table."""

    def __init__(self, table: SignatureTable, window_days: int = DEFAULT_WINDOW_DAYS) -> None:
        self._table = table
        self._window_days = window_days
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def window_days(self) -> int:
        return self._window_days

    def check_and_record(self, signature: str, now: datetime | None = None) -> bool:
        """Return True if the signature is a duplicate; otherwise record it and return False."""
        current = now or datetime.now(timezone.utc)
        with self._lock:
            if is_duplicate(signature, self._table, self._window_days, current):
                self._logger.debug("Duplicate signature %s within %sd", signature[:12], self._window_days)
                return True
            record_signature(signature, self._table, current)
            return False

    def peek(self, signature: str, now: datetime | None = None) -> bool:
        with self._lock:
            return is_duplicate(signature, self._table, self._window_days, now)

    def discard(self, signature: str) -> None:
        """Forget a signature whose event was never persisted."""
        with self._lock:
            self._table.pop(signature, None)


def _collapse(value: str | None) -> str:
    return " ".join((value or "").lower().split())


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
