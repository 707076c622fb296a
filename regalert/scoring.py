from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Iterable

from .normalizer import NormalizedEvent


class Category(str, Enum):
    URGENT = "Urgent"
    INFORMATIONAL = "Informational"
    DIGEST = "Digest"
    SUPPRESSED = "Suppressed"
    IMPORTANT = "Important"


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


CATEGORY_RANK = {
    Category.URGENT: 1,
    Category.INFORMATIONAL: 2,
    Category.DIGEST: 3,
    Category.IMPORTANT: 4,
    Category.SUPPRESSED: 5,
}

DEFAULT_DOMAIN_KEYWORDS = (
    "ct",
    "mri",
    "x-ray",
    "ultrasound",
    "mammograph",
    "fluoroscop",
    "radiograph",
    "imaging",
    "scanner",
    "contrast",
    "nuclear medicine",
    "pet",
    "spect",
    "angiograph",
    "interventional",
)

# Additive mode: fixed reliability per source, highest for primary regulators.
SOURCE_RELIABILITY = {
    "fda-device-recall": 30,
    "fda-drug-recall": 30,
    "fda-drug-shortage": 30,
    "cms-pfs": 28,
    "federal-register": 25,
    "cdph": 22,
    "rhb": 22,
    "mbc": 20,
}
DEFAULT_RELIABILITY = 15

# Adjustment mode: base confidence per source.
SOURCE_BASE_SCORES = {
    "fda-device-recall": 60,
    "fda-drug-recall": 60,
    "fda-drug-shortage": 60,
    "ashp-shortage": 50,
    "cms-pfs": 70,
    "federal-register": 65,
    "cdph": 60,
    "rhb": 60,
    "mbc": 55,
    "vendor-advisory": 55,
    "payer-bulletin": 50,
}
DEFAULT_BASE_SCORE = 50

PRIMARY_RECALL_SOURCES = {"fda-device-recall", "fda-drug-recall"}
SECONDARY_SOURCES = {"ashp-shortage", "payer-bulletin"}

SPIKE_THRESHOLD = 2.0

_RECALL_CLASS = re.compile(r"\bclass\s+(iii|ii|i|3|2|1)\b")
_CLASS_LEVELS = {"i": 1, "1": 1, "ii": 2, "2": 2, "iii": 3, "3": 3}


@dataclass(frozen=True)
class SpikeSignal:
    current_count: float
    historical_mean: float
    historical_stddev: float


@dataclass(frozen=True)
class ScoringContext:
    target_jurisdiction: str = "CA"
    jurisdiction_aliases: tuple[str, ...] = ("california",)
    broad_jurisdictions: tuple[str, ...] = ("nationwide", "national", "us", "usa")
    regional_jurisdictions: tuple[str, ...] = ("west", "pacific")
    domain_keywords: tuple[str, ...] = DEFAULT_DOMAIN_KEYWORDS
    personalization: frozenset[str] = frozenset()
    tracked_drugs: frozenset[str] = frozenset()
    secondary_signal: bool = False
    primary_recall: bool = False
    spike: SpikeSignal | None = None
    base_score_override: int | None = None
    vendor_advisory: bool = False


@dataclass(frozen=True)
class ScoringFactors:
    source_reliability: int
    domain_relevance: int
    risk_level: int
    jurisdiction_relevance: int
    financial_impact: int

    @property
    def total(self) -> int:
        return (
            self.source_reliability
            + self.domain_relevance
            + self.risk_level
            + self.jurisdiction_relevance
            + self.financial_impact
        )


@dataclass(frozen=True)
class ScoredEvent:
    event: NormalizedEvent
    score: int
    category: Category
    confidence: Confidence
    reasons: tuple[str, ...] = field(default_factory=tuple)
    strategy: str = ""
    base_score: int = 0


class ScoringStrategy(ABC):
    name = ""

    @abstractmethod
    def score(self, event: NormalizedEvent, context: ScoringContext) -> ScoredEvent:
        """Score an event. Must be deterministic and free of side effects."""
        raise NotImplementedError


class AdditiveStrategy(ScoringStrategy):
    """Sum of five bounded contributions, categorized on the 85/75/50 table."""

    name = "additive"

    def score(self, event: NormalizedEvent, context: ScoringContext) -> ScoredEvent:
        factors = compute_factors(event, context)
        reasons = [
            f"Source reliability: {factors.source_reliability}",
            f"Domain relevance: {factors.domain_relevance}",
            f"Risk level: {factors.risk_level}",
            f"Jurisdiction relevance: {factors.jurisdiction_relevance}",
            f"Financial impact: {factors.financial_impact}",
        ]
        total = factors.total
        if context.base_score_override is not None:
            total = context.base_score_override
            reasons.append(f"Score override: {total}")

        category = category_for_score(total)
        if event.advisory or context.vendor_advisory:
            category = Category.IMPORTANT
            reasons.append("Vendor advisory override: Important")

        return ScoredEvent(
            event=event,
            score=total,
            category=category,
            confidence=_reliability_confidence(factors.source_reliability),
            reasons=tuple(reasons),
            strategy=self.name,
            base_score=factors.total,
        )


class AdjustmentStrategy(ScoringStrategy):
    """Per-source base confidence plus ordered additive adjustments."""

    name = "adjustment"

    def score(self, event: NormalizedEvent, context: ScoringContext) -> ScoredEvent:
        source = event.source_tag
        base = SOURCE_BASE_SCORES.get(source, DEFAULT_BASE_SCORE)
        if context.base_score_override is not None:
            base = context.base_score_override
        adjusted = base
        reasons = [f"Source {source}: {base}"]

        if context.secondary_signal:
            adjusted += 10
            reasons.append("Secondary signal: +10")

        has_recall = context.primary_recall or source in PRIMARY_RECALL_SOURCES
        if context.spike is not None:
            z_score, spiking = detect_spike(
                context.spike.current_count,
                context.spike.historical_mean,
                context.spike.historical_stddev,
            )
            if spiking and has_recall:
                adjusted += 15
                reasons.append(f"Spike + recall escalation (z={z_score:.2f}): +15")
            elif spiking:
                reasons.append(f"Z-score spike (z={z_score:.2f}): +0")

        if event.rate_delta is not None:
            delta = event.rate_delta.percent_change
            if abs(delta) >= 10:
                adjusted += 20
                reasons.append(f"Financial delta {delta:+.1f}%: +20")
            elif abs(delta) >= 5:
                adjusted += 10
                reasons.append(f"Financial delta {delta:+.1f}%: +10")

        if _personalization_match(event, context.personalization):
            adjusted += 15
            reasons.append("Exact personalization match: +15")

        if _drug_dependency_match(event, context.tracked_drugs):
            adjusted += 15
            reasons.append("Drug dependency match: +15")

        if event.advisory or context.vendor_advisory:
            reasons.append("Vendor advisory override: Important")
            return ScoredEvent(
                event=event,
                score=adjusted,
                category=Category.IMPORTANT,
                confidence=confidence_for_score(adjusted),
                reasons=tuple(reasons),
                strategy=self.name,
                base_score=base,
            )

        category = category_for_score(adjusted)
        confidence = confidence_for_score(adjusted)
        if source in SECONDARY_SOURCES and context.primary_recall and confidence != Confidence.HIGH:
            confidence = Confidence.HIGH
            reasons.append("Primary source corroboration: High")

        return ScoredEvent(
            event=event,
            score=adjusted,
            category=category,
            confidence=confidence,
            reasons=tuple(reasons),
            strategy=self.name,
            base_score=base,
        )


STRATEGIES: dict[str, type[ScoringStrategy]] = {
    AdditiveStrategy.name: AdditiveStrategy,
    AdjustmentStrategy.name: AdjustmentStrategy,
}


def build_strategy(mode: str) -> ScoringStrategy:
    strategy = STRATEGIES.get(mode.lower())
    if strategy is None:
        raise ValueError(f"Unknown scoring mode {mode!r}; expected one of {sorted(STRATEGIES)}")
    return strategy()


def compute_factors(event: NormalizedEvent, context: ScoringContext) -> ScoringFactors:
    return ScoringFactors(
        source_reliability=SOURCE_RELIABILITY.get(event.source_tag, DEFAULT_RELIABILITY),
        domain_relevance=_score_domain(event, context.domain_keywords),
        risk_level=_score_risk(event),
        jurisdiction_relevance=_score_jurisdiction(event, context),
        financial_impact=_score_financial(event),
    )


def category_for_score(score: int) -> Category:
    if score >= 85:
        return Category.URGENT
    if score >= 75:
        return Category.INFORMATIONAL
    if score >= 50:
        return Category.DIGEST
    return Category.SUPPRESSED


def confidence_for_score(score: int) -> Confidence:
    if score >= 60:
        return Confidence.HIGH
    if score >= 50:
        return Confidence.MEDIUM
    return Confidence.LOW


def should_summarize(category: Category) -> bool:
    return category in {Category.URGENT, Category.INFORMATIONAL}


def calculate_z_score(current_count: float, historical_mean: float, historical_stddev: float) -> float:
    if historical_stddev == 0:
        return 0.0
    return (current_count - historical_mean) / historical_stddev


def detect_spike(
    current_count: float,
    historical_mean: float,
    historical_stddev: float,
    threshold: float = SPIKE_THRESHOLD,
) -> tuple[float, bool]:
    z_score = calculate_z_score(current_count, historical_mean, historical_stddev)
    return z_score, z_score >= threshold


def contains_token(text: str, token: str) -> bool:
    token = token.strip().lower()
    if not token:
        return False
    if len(token) <= 3:
        return re.search(rf"\b{re.escape(token)}\b", text) is not None
    return token in text


def _score_domain(event: NormalizedEvent, keywords: Iterable[str]) -> int:
    text = f"{event.title} {event.description} {event.device_descriptor or ''}".lower()
    matched = sum(1 for keyword in keywords if contains_token(text, keyword))
    if matched >= 3:
        return 25
    if matched == 2:
        return 20
    if matched == 1:
        return 15
    if "medical" in text or "hospital" in text:
        return 8
    return 0


def _score_risk(event: NormalizedEvent) -> int:
    text = f"{event.classification_tag or ''} {event.description}".lower()
    match = _RECALL_CLASS.search(text)
    level = _CLASS_LEVELS[match.group(1)] if match else None
    if level == 1 or "death" in text or "serious injury" in text:
        return 25
    if level == 2 or "injury" in text or "malfunction" in text:
        return 18
    if level == 3 or "labeling" in text:
        return 10
    if "recall" in text or "safety" in text:
        return 12
    return 5


def _score_jurisdiction(event: NormalizedEvent, context: ScoringContext) -> int:
    location = (event.jurisdiction_tag or "").lower()
    if not location:
        return 3
    targets = (context.target_jurisdiction, *context.jurisdiction_aliases)
    if any(contains_token(location, target) for target in targets):
        return 10
    if any(contains_token(location, term) for term in context.broad_jurisdictions):
        return 8
    if any(contains_token(location, term) for term in context.regional_jurisdictions):
        return 6
    return 3


def _score_financial(event: NormalizedEvent) -> int:
    if event.rate_delta is not None:
        change = abs(event.rate_delta.percent_change)
        if change >= 10:
            return 10
        if change >= 5:
            return 7
        return 4
    if event.affected_codes:
        return 6
    return 2


def _reliability_confidence(reliability: int) -> Confidence:
    if reliability >= 28:
        return Confidence.HIGH
    if reliability >= 20:
        return Confidence.MEDIUM
    return Confidence.LOW


def _personalization_match(event: NormalizedEvent, terms: frozenset[str]) -> bool:
    if not terms:
        return False
    lowered = {term.strip().lower() for term in terms if term.strip()}
    if any(code.lower() in lowered for code in event.affected_codes):
        return True
    for value in (event.manufacturer, event.device_descriptor):
        if value and value.lower() in lowered:
            return True
    device = (event.device_descriptor or "").lower()
    return bool(device) and any(contains_token(device, term) for term in lowered)


def _drug_dependency_match(event: NormalizedEvent, drugs: frozenset[str]) -> bool:
    if not drugs:
        return False
    text = f"{event.title} {event.description} {event.device_descriptor or ''}".lower()
    return any(contains_token(text, drug) for drug in drugs)
