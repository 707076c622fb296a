from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any


RawSourceRecord = dict[str, Any]

KNOWN_SOURCES = frozenset(
    {
        "fda-device-recall",
        "fda-drug-recall",
        "fda-drug-shortage",
        "ashp-shortage",
        "cms-pfs",
        "federal-register",
        "cdph",
        "rhb",
        "mbc",
        "vendor-advisory",
        "payer-bulletin",
    }
)
UNKNOWN_SOURCE = "unknown"

_SOURCE_ALIASES = {
    "openfda": "fda-device-recall",
    "fda": "fda-device-recall",
    "cms": "cms-pfs",
    "fedreg": "federal-register",
    "federalregister": "federal-register",
    "cdph-rhb": "rhb",
    "vendor advisory": "vendor-advisory",
}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDelta:
    old: float
    new: float

    @property
    def percent_change(self) -> float:
        if self.old == 0:
            return 0.0 if self.new == 0 else 100.0
        return (self.new - self.old) / self.old * 100


@dataclass(frozen=True)
class NormalizedEvent:
    source_tag: str
    source_record_id: str
    title: str
    description: str
    occurred_at: datetime
    classification_tag: str | None = None
    manufacturer: str | None = None
    device_descriptor: str | None = None
    affected_codes: tuple[str, ...] = field(default_factory=tuple)
    rate_delta: RateDelta | None = None
    jurisdiction_tag: str | None = None
    advisory: bool = False
    url: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_tag, self.source_record_id)


def normalize(raw: RawSourceRecord | None, now: datetime | None = None) -> NormalizedEvent:
    """
    Map a source-shaped record to a NormalizedEvent.

    Never raises: anything that cannot be extracted is defaulted or left out.
    """
    ingested_at = now or datetime.now(timezone.utc)
    record = raw if isinstance(raw, dict) else {}
    source = normalize_source_tag(record.get("source"))
    try:
        fields = _EXTRACTORS.get(source, _extract_generic)(record)
    except Exception:
        logger.exception("Normalizer fell back to generic extraction for %s record", source)
        fields = _extract_generic(record)

    record_id = _clean(fields.get("id")) or _content_id(record)
    description = _clean(fields.get("description")) or ""
    title = (
        _clean(fields.get("title"))
        or _clean(fields.get("device"))
        or _first_sentence(description)
        or f"{source} record {record_id}"
    )
    return NormalizedEvent(
        source_tag=source,
        source_record_id=record_id,
        title=title,
        description=description,
        occurred_at=_parse_date(fields.get("date"), ingested_at),
        classification_tag=_clean(fields.get("classification")),
        manufacturer=_clean(fields.get("manufacturer")),
        device_descriptor=_clean(fields.get("device")),
        affected_codes=_codes(fields.get("codes")),
        rate_delta=_rate_delta(fields.get("old_rate"), fields.get("new_rate")),
        jurisdiction_tag=_clean(fields.get("jurisdiction")),
        advisory=source == "vendor-advisory" or record.get("type") == "vendor_advisory",
        url=_clean(fields.get("url")) or "",
    )


def normalize_source_tag(value: Any) -> str:
    if not isinstance(value, str):
        return UNKNOWN_SOURCE
    tag = value.strip().lower()
    tag = _SOURCE_ALIASES.get(tag, tag)
    if tag in KNOWN_SOURCES:
        return tag
    return UNKNOWN_SOURCE


def _extract_fda_enforcement(raw: RawSourceRecord) -> dict[str, Any]:
    product = raw.get("product_description")
    return {
        "id": raw.get("recall_number") or raw.get("event_id") or raw.get("id"),
        "title": raw.get("title") or _recall_title(raw.get("classification"), product),
        "description": raw.get("reason_for_recall") or raw.get("reason"),
        "date": raw.get("report_date") or raw.get("recall_initiation_date"),
        "classification": raw.get("classification") or raw.get("product_class"),
        "manufacturer": raw.get("recalling_firm") or raw.get("firm_name") or raw.get("manufacturer"),
        "device": raw.get("device_name") or raw.get("model") or product,
        "jurisdiction": raw.get("state") or raw.get("distribution_pattern"),
        "codes": raw.get("product_code"),
        "url": raw.get("url"),
    }


def _extract_drug_shortage(raw: RawSourceRecord) -> dict[str, Any]:
    name = raw.get("generic_name") or raw.get("title")
    return {
        "id": raw.get("application_number") or raw.get("id"),
        "title": f"Drug shortage: {name}" if name else None,
        "description": raw.get("shortage_reason") or raw.get("reason"),
        "date": raw.get("created_date") or raw.get("update_date"),
        "device": name,
        "manufacturer": raw.get("company_name"),
        "jurisdiction": "nationwide",
        "url": raw.get("url"),
    }


def _extract_cms(raw: RawSourceRecord) -> dict[str, Any]:
    code = raw.get("cpt_code") or raw.get("code")
    description = raw.get("description") or ""
    title = raw.get("title")
    if not title and code:
        title = f"CPT {code} reimbursement update: {description}".rstrip(": ")
    return {
        "id": raw.get("id") or (f"{code}-{raw.get('year')}" if code else None),
        "title": title,
        "description": description,
        "date": raw.get("effective_date") or raw.get("date"),
        "codes": raw.get("cpt_codes") or code,
        "old_rate": raw.get("old_rate"),
        "new_rate": raw.get("new_rate"),
        "jurisdiction": raw.get("locality"),
        "url": raw.get("url"),
    }


def _extract_federal_register(raw: RawSourceRecord) -> dict[str, Any]:
    agencies = raw.get("agencies")
    agency = None
    if isinstance(agencies, list) and agencies and isinstance(agencies[0], dict):
        agency = agencies[0].get("name")
    return {
        "id": raw.get("document_number") or raw.get("id"),
        "title": raw.get("title"),
        "description": raw.get("abstract") or raw.get("summary"),
        "date": raw.get("publication_date"),
        "classification": raw.get("type"),
        "manufacturer": agency,
        "jurisdiction": "national",
        "url": raw.get("html_url") or raw.get("url"),
    }


def _extract_state_bulletin(raw: RawSourceRecord) -> dict[str, Any]:
    return {
        "id": raw.get("id") or raw.get("guid"),
        "title": raw.get("title"),
        "description": raw.get("description") or raw.get("impact"),
        "date": raw.get("date") or raw.get("published"),
        "classification": raw.get("urgency"),
        "device": raw.get("deviceType"),
        "jurisdiction": raw.get("jurisdiction") or "CA",
        "url": raw.get("url") or raw.get("link"),
    }


def _extract_vendor_advisory(raw: RawSourceRecord) -> dict[str, Any]:
    vendor = raw.get("vendor")
    title = raw.get("title")
    if vendor and title and not str(title).startswith(str(vendor)):
        title = f"{vendor}: {title}"
    products = raw.get("affectedProducts")
    device = ", ".join(str(item) for item in products) if isinstance(products, list) else None
    return {
        "id": raw.get("id") or raw.get("guid"),
        "title": title,
        "description": raw.get("description") or raw.get("summary"),
        "date": raw.get("publishedDate") or raw.get("published") or raw.get("date"),
        "classification": raw.get("severity"),
        "manufacturer": vendor,
        "device": device,
        "jurisdiction": raw.get("jurisdiction"),
        "url": raw.get("url") or raw.get("link"),
    }


def _extract_generic(raw: RawSourceRecord) -> dict[str, Any]:
    return {
        "id": raw.get("id") or raw.get("sourceId"),
        "title": raw.get("title"),
        "description": raw.get("description") or raw.get("summary") or raw.get("reason"),
        "date": raw.get("date") or raw.get("published"),
        "classification": raw.get("classification"),
        "manufacturer": raw.get("manufacturer"),
        "device": raw.get("device_name") or raw.get("model"),
        "codes": raw.get("codes"),
        "jurisdiction": raw.get("state") or raw.get("jurisdiction"),
        "url": raw.get("url") or raw.get("link"),
    }


_EXTRACTORS = {
    "fda-device-recall": _extract_fda_enforcement,
    "fda-drug-recall": _extract_fda_enforcement,
    "fda-drug-shortage": _extract_drug_shortage,
    "ashp-shortage": _extract_drug_shortage,
    "cms-pfs": _extract_cms,
    "federal-register": _extract_federal_register,
    "cdph": _extract_state_bulletin,
    "rhb": _extract_state_bulletin,
    "mbc": _extract_state_bulletin,
    "vendor-advisory": _extract_vendor_advisory,
    "payer-bulletin": _extract_generic,
}


def _recall_title(classification: Any, product: Any) -> str | None:
    product_text = _clean(product)
    if not product_text:
        return None
    label = _clean(classification) or "Device"
    return f"{label} Recall: {product_text[:100]}"


def _clean(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = " ".join(str(value).split())
    return text or None


def _first_sentence(text: str) -> str | None:
    if not text:
        return None
    head = text.split(".", 1)[0].strip()
    return head[:120] or None


def _codes(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    values = value if isinstance(value, (list, tuple)) else [value]
    codes: list[str] = []
    for item in values:
        cleaned = _clean(item)
        if cleaned and cleaned not in codes:
            codes.append(cleaned)
    return tuple(codes)


def _rate_delta(old: Any, new: Any) -> RateDelta | None:
    try:
        if old is None or new is None:
            return None
        return RateDelta(old=float(old), new=float(new))
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_date(value: Any, default: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _clean(value)
        if not text:
            return default
        if len(text) == 8 and text.isdigit():
            # openFDA reports dates as YYYYMMDD
            text = f"{text[:4]}-{text[4:6]}-{text[6:]}"
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return default
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # offsets at the edge of the calendar cannot be shifted to UTC
        return default


def _content_id(raw: RawSourceRecord) -> str:
    try:
        payload = json.dumps(raw, sort_keys=True, default=str)
    except (TypeError, ValueError):
        payload = repr(raw)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]
