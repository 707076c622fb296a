from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any

import yaml

from .normalizer import KNOWN_SOURCES
from .quota import DEFAULT_DAILY_LIMIT
from .scoring import DEFAULT_DOMAIN_KEYWORDS, STRATEGIES


@dataclass
class NotifierTarget:
    type: str
    settings: dict[str, Any]


@dataclass
class NotificationConfig:
    targets: list[NotifierTarget]


@dataclass
class Settings:
    poll_interval_minutes: int
    state_file: str
    max_results_per_feed: int
    request_timeout_seconds: int
    user_agent: str
    max_notifications_per_run: int
    max_events: int
    dedupe_window_days: int
    signature_retention_days: int
    enrichment_timeout_seconds: float
    notify_timeout_seconds: float


@dataclass
class ScoringConfig:
    mode: str
    target_jurisdiction: str
    jurisdiction_aliases: list[str]
    domain_keywords: list[str]
    personalization: list[str]
    tracked_drugs: list[str]


@dataclass
class QuotaConfig:
    daily_limit: int
    informational_reserve: int


@dataclass
class RoutingConfig:
    sms_opt_in: bool
    informational_email: bool


@dataclass
class RSSFeedConfig:
    name: str
    url: str
    source: str


@dataclass
class CMSConfig:
    enabled: bool
    url: str | None


@dataclass
class FederalRegisterConfig:
    enabled: bool
    term: str


@dataclass
class FeedsConfig:
    openfda_device: bool
    openfda_drug: bool
    drug_shortages: bool
    cms: CMSConfig
    federal_register: FederalRegisterConfig
    state_bulletins: list[RSSFeedConfig]
    vendor_advisories: list[RSSFeedConfig]


@dataclass
class EnrichmentConfig:
    provider: str
    api_key: str | None
    model: str


@dataclass
class Config:
    notifications: NotificationConfig
    settings: Settings
    feeds: FeedsConfig
    scoring: ScoringConfig
    quota: QuotaConfig
    routing: RoutingConfig
    enrichment: EnrichmentConfig


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(val) for key, val in value.items()}
    return value


def _require_dict(value: Any, name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a mapping")
    return value


def _require_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list")
    return [str(item) for item in value]


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    data = _expand_env(raw)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return parse_config(data)


def parse_config(data: dict[str, Any]) -> Config:
    return Config(
        notifications=_load_notifications(data),
        settings=_load_settings(_require_dict(data.get("settings"), "settings")),
        feeds=_load_feeds(_require_dict(data.get("feeds"), "feeds")),
        scoring=_load_scoring(_require_dict(data.get("scoring"), "scoring")),
        quota=_load_quota(_require_dict(data.get("quota"), "quota")),
        routing=_load_routing(_require_dict(data.get("routing"), "routing")),
        enrichment=_load_enrichment(_require_dict(data.get("enrichment"), "enrichment")),
    )


def _load_settings(raw: dict[str, Any]) -> Settings:
    poll_interval = int(raw.get("poll_interval_minutes", 120))
    if poll_interval < 5:
        raise ValueError("settings.poll_interval_minutes must be >= 5")
    window = int(raw.get("dedupe_window_days", 14))
    if window < 0:
        raise ValueError("settings.dedupe_window_days must be >= 0")
    retention = int(raw.get("signature_retention_days", 60))
    if retention < window:
        raise ValueError("settings.signature_retention_days must be >= dedupe_window_days")

    return Settings(
        poll_interval_minutes=poll_interval,
        state_file=str(raw.get("state_file", "./state.json")),
        max_results_per_feed=int(raw.get("max_results_per_feed", 100)),
        request_timeout_seconds=int(raw.get("request_timeout_seconds", 20)),
        user_agent=str(raw.get("user_agent", "regalert/0.1")),
        max_notifications_per_run=int(raw.get("max_notifications_per_run", 25)),
        max_events=int(raw.get("max_events", 5000)),
        dedupe_window_days=window,
        signature_retention_days=retention,
        enrichment_timeout_seconds=float(raw.get("enrichment_timeout_seconds", 15)),
        notify_timeout_seconds=float(raw.get("notify_timeout_seconds", 20)),
    )


def _load_scoring(raw: dict[str, Any]) -> ScoringConfig:
    mode = str(raw.get("mode", "additive")).lower()
    if mode not in STRATEGIES:
        raise ValueError(f"scoring.mode must be one of {sorted(STRATEGIES)}")
    keywords = _require_list(raw.get("domain_keywords"), "scoring.domain_keywords")
    aliases = raw.get("jurisdiction_aliases")
    return ScoringConfig(
        mode=mode,
        target_jurisdiction=str(raw.get("target_jurisdiction", "CA")),
        jurisdiction_aliases=(
            ["california"] if aliases is None else _require_list(aliases, "scoring.jurisdiction_aliases")
        ),
        domain_keywords=keywords or list(DEFAULT_DOMAIN_KEYWORDS),
        personalization=_require_list(raw.get("personalization"), "scoring.personalization"),
        tracked_drugs=_require_list(raw.get("tracked_drugs"), "scoring.tracked_drugs"),
    )


def _load_quota(raw: dict[str, Any]) -> QuotaConfig:
    daily_limit = int(raw.get("daily_limit", DEFAULT_DAILY_LIMIT))
    if daily_limit < 0:
        raise ValueError("quota.daily_limit must be >= 0")
    reserve = int(raw.get("informational_reserve", 0))
    if reserve < 0 or reserve > daily_limit:
        raise ValueError("quota.informational_reserve must be between 0 and quota.daily_limit")
    return QuotaConfig(daily_limit=daily_limit, informational_reserve=reserve)


def _load_routing(raw: dict[str, Any]) -> RoutingConfig:
    return RoutingConfig(
        sms_opt_in=bool(raw.get("sms_opt_in", False)),
        informational_email=bool(raw.get("informational_email", True)),
    )


def _load_enrichment(raw: dict[str, Any]) -> EnrichmentConfig:
    provider = str(raw.get("provider", "none")).lower()
    if provider not in {"none", "perplexity"}:
        raise ValueError("enrichment.provider must be 'none' or 'perplexity'")
    api_key = raw.get("api_key")
    if isinstance(api_key, str) and (not api_key or "${" in api_key):
        api_key = None
    if provider == "perplexity" and not api_key:
        raise ValueError("enrichment.api_key is required for the perplexity provider")
    return EnrichmentConfig(
        provider=provider,
        api_key=str(api_key) if api_key else None,
        model=str(raw.get("model", "llama-3.1-sonar-small-128k-online")),
    )


def _load_notifications(data: dict[str, Any]) -> NotificationConfig:
    targets: list[NotifierTarget] = []
    notify_raw = data.get("notify", [])
    if notify_raw:
        if not isinstance(notify_raw, list):
            raise ValueError("notify must be a list")
        for entry in notify_raw:
            if not isinstance(entry, dict):
                raise ValueError("notify entries must be mappings")
            target_type = entry.get("type")
            if not target_type:
                raise ValueError("notify entries must include type")
            settings = {k: v for k, v in entry.items() if k != "type"}
            targets.append(NotifierTarget(type=str(target_type), settings=settings))
    return NotificationConfig(targets=targets)


def _load_feeds(raw: dict[str, Any]) -> FeedsConfig:
    cms_raw = _require_dict(raw.get("cms"), "feeds.cms")
    cms_url = cms_raw.get("url")
    cms = CMSConfig(
        enabled=bool(cms_raw.get("enabled", bool(cms_url))),
        url=str(cms_url) if cms_url else None,
    )
    if cms.enabled and not cms.url:
        raise ValueError("feeds.cms.url is required when feeds.cms is enabled")

    fedreg_raw = _require_dict(raw.get("federal_register"), "feeds.federal_register")
    fedreg = FederalRegisterConfig(
        enabled=bool(fedreg_raw.get("enabled", True)),
        term=str(fedreg_raw.get("term", "radiology OR mammography OR medical imaging")),
    )

    return FeedsConfig(
        openfda_device=bool(raw.get("openfda_device", True)),
        openfda_drug=bool(raw.get("openfda_drug", True)),
        drug_shortages=bool(raw.get("drug_shortages", True)),
        cms=cms,
        federal_register=fedreg,
        state_bulletins=_load_rss_list(raw.get("state_bulletins"), "feeds.state_bulletins", None),
        vendor_advisories=_load_rss_list(
            raw.get("vendor_advisories"), "feeds.vendor_advisories", "vendor-advisory"
        ),
    )


def _load_rss_list(value: Any, name: str, default_source: str | None) -> list[RSSFeedConfig]:
    if not value:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{name} must be a list")
    feeds: list[RSSFeedConfig] = []
    for entry in value:
        if not isinstance(entry, dict):
            raise ValueError(f"{name} entries must be mappings")
        feed_name = entry.get("name")
        url = entry.get("url")
        source = entry.get("source", default_source)
        if not feed_name or not url:
            raise ValueError(f"{name} entries must include name and url")
        if not source or str(source).lower() not in KNOWN_SOURCES:
            raise ValueError(f"{name} entries must include a known source tag")
        feeds.append(RSSFeedConfig(name=str(feed_name), url=str(url), source=str(source).lower()))
    return feeds
