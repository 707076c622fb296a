from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import os
import threading
from typing import Any

from .decisions import NotificationPlan
from .scoring import ScoredEvent


STATE_VERSION = 2
DEFAULT_MAX_EVENTS = 5000


@dataclass
class State:
    last_poll: datetime | None
    signatures: dict[str, datetime] = field(default_factory=dict)
    events: list[dict[str, Any]] = field(default_factory=list)
    pending_digest: list[dict[str, Any]] = field(default_factory=list)
    cms_rates: dict[str, float] = field(default_factory=dict)
    last_digest_sent: datetime | None = None
    version: int = STATE_VERSION


class EventStore:
    """Append-only event log plus signature lookup table backed by a State."""

    def __init__(self, state: State, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        self.state = state
        self._max_events = max_events
        self._lock = threading.Lock()

    @property
    def signatures(self) -> dict[str, datetime]:
        return self.state.signatures

    def append_event(self, scored: ScoredEvent, plan: NotificationPlan, signature: str = "") -> dict[str, Any]:
        record = event_record(scored, plan, signature)
        with self._lock:
            self.state.events.append(record)
            overflow = len(self.state.events) - self._max_events
            if overflow > 0:
                del self.state.events[:overflow]
            if plan.digest:
                self.state.pending_digest.append(record)
        return record

    def lookup_signature(self, signature: str) -> datetime | None:
        return self.state.signatures.get(signature)

    def record_signature(self, signature: str, now: datetime | None = None) -> None:
        self.state.signatures[signature] = now or datetime.now(timezone.utc)

    def drain_digest(self) -> list[dict[str, Any]]:
        with self._lock:
            pending = list(self.state.pending_digest)
            self.state.pending_digest.clear()
        return pending


def event_record(scored: ScoredEvent, plan: NotificationPlan, signature: str = "") -> dict[str, Any]:
    event = scored.event
    delta = None
    if event.rate_delta is not None:
        delta = {"old": event.rate_delta.old, "new": event.rate_delta.new}
    return {
        "id": f"{event.source_tag}:{event.source_record_id}",
        "source": event.source_tag,
        "source_id": event.source_record_id,
        "title": event.title,
        "description": event.description,
        "occurred_at": _to_iso(event.occurred_at),
        "classification": event.classification_tag,
        "manufacturer": event.manufacturer,
        "device": event.device_descriptor,
        "codes": list(event.affected_codes),
        "delta": delta,
        "jurisdiction": event.jurisdiction_tag,
        "url": event.url,
        "score": scored.score,
        "base_score": scored.base_score,
        "strategy": scored.strategy,
        "category": scored.category.value,
        "confidence": scored.confidence.value,
        "reasons": list(scored.reasons),
        "channels": sorted(channel.value for channel in plan.channels),
        "content_variant": plan.content_variant,
        "summary": plan.summary,
        "summary_source": plan.summary_source,
        "signature": signature,
    }


def _parse_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def load_state(path: str) -> State:
    if not os.path.exists(path):
        return State(last_poll=None)

    with open(path, "r", encoding="utf-8") as handle:
        raw = json.load(handle)

    if not isinstance(raw, dict):
        return State(last_poll=None)

    return State(
        last_poll=_optional_datetime(raw.get("last_poll")),
        signatures=_parse_signatures(raw.get("signatures")),
        events=_dict_list(raw.get("events")),
        pending_digest=_dict_list(raw.get("pending_digest")),
        cms_rates=_parse_rates(raw.get("cms_rates")),
        last_digest_sent=_optional_datetime(raw.get("last_digest_sent")),
        version=int(raw.get("version", STATE_VERSION)),
    )


def save_state(path: str, state: State) -> None:
    payload = {
        "version": state.version,
        "last_poll": _to_iso(state.last_poll) if state.last_poll else None,
        "last_digest_sent": _to_iso(state.last_digest_sent) if state.last_digest_sent else None,
        "signatures": {sig: _to_iso(ts) for sig, ts in state.signatures.items()},
        "events": state.events,
        "pending_digest": state.pending_digest,
        "cms_rates": state.cms_rates,
    }
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


def prune_signatures(state: State, days: int = 60, now: datetime | None = None) -> None:
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    # in place: the dedupe engine holds a reference to this mapping
    stale = [sig for sig, ts in state.signatures.items() if ts < cutoff]
    for sig in stale:
        del state.signatures[sig]


def _optional_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return _parse_datetime(value)
    except ValueError:
        return None


def _parse_signatures(value: Any) -> dict[str, datetime]:
    now = datetime.now(timezone.utc)
    if not isinstance(value, dict):
        return {}
    parsed: dict[str, datetime] = {}
    for sig, ts in value.items():
        parsed[str(sig)] = _optional_datetime(ts) or now
    return parsed


def _dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _parse_rates(value: Any) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    rates: dict[str, float] = {}
    for code, rate in value.items():
        try:
            rates[str(code)] = float(rate)
        except (TypeError, ValueError):
            continue
    return rates
