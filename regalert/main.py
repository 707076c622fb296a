from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import logging
from pathlib import Path

from .config import Config, load_config
from .decisions import Channel, RoutingPreferences
from .dedupe import DedupeEngine
from .enrichment import BaseEnricher, PerplexityEnricher, PerplexitySettings
from .feeds.base import BaseFeed
from .feeds.cms import CMSFeeScheduleFeed, CMSSettings
from .feeds.federal_register import FederalRegisterFeed, FederalRegisterSettings
from .feeds.openfda import DrugShortageFeed, OpenFDAEnforcementFeed, OpenFDASettings
from .feeds.rss import RSSFeed, RSSSettings, RSSSource
from .notifiers.base import BaseNotifier
from .notifiers.factory import build_notifiers
from .notifiers.message import NotificationMessage
from .pipeline import Pipeline, PipelineSettings, build_context
from .quota import new_quota
from .scoring import build_strategy
from .state import EventStore, State, load_state, save_state


async def main() -> None:
    args = _parse_args()
    if args.init_config:
        _init_config(Path(args.config))
        return
    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Invalid config {args.config}: {exc}") from exc
    _configure_logging(args.verbose)
    logger = logging.getLogger(__name__)

    notifiers = build_notifiers(config)
    if not args.dry_run and not notifiers:
        raise SystemExit(
            "At least one notifier is required unless --dry-run is set. "
            "Add brevo, twilio or webhook entries under notify in config.yaml."
        )

    if args.test_notify:
        message = _build_test_message()
        for channel_notifiers in notifiers.values():
            for notifier in channel_notifiers:
                delivered = await notifier.send(message)
                logger.info("Test notification via %s: %s", type(notifier).__name__, delivered)
        return

    state = load_state(config.settings.state_file)
    pipeline = build_pipeline(config, state, notifiers, dry_run=args.dry_run)

    while True:
        await pipeline.poll_once()
        if not args.dry_run:
            save_state(config.settings.state_file, state)
        if args.once:
            break
        await asyncio.sleep(config.settings.poll_interval_minutes * 60)


def build_pipeline(
    config: Config,
    state: State,
    notifiers: dict[Channel, list[BaseNotifier]] | None = None,
    dry_run: bool = False,
) -> Pipeline:
    settings = config.settings
    store = EventStore(state, max_events=settings.max_events)
    return Pipeline(
        feeds=_build_feeds(config, state),
        strategy=build_strategy(config.scoring.mode),
        context=build_context(config.scoring),
        store=store,
        dedupe=DedupeEngine(store.signatures, window_days=settings.dedupe_window_days),
        quota=new_quota(config.quota.daily_limit),
        notifiers=build_notifiers(config) if notifiers is None else notifiers,
        enricher=_build_enricher(config),
        preferences=RoutingPreferences(
            sms_opt_in=config.routing.sms_opt_in,
            informational_email=config.routing.informational_email,
            informational_reserve=config.quota.informational_reserve,
        ),
        settings=PipelineSettings(
            enrichment_timeout_seconds=settings.enrichment_timeout_seconds,
            notify_timeout_seconds=settings.notify_timeout_seconds,
            max_notifications_per_run=settings.max_notifications_per_run,
            signature_retention_days=settings.signature_retention_days,
        ),
        dry_run=dry_run,
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Radiology regulatory alert monitor")
    parser.add_argument("--config", default="./config.yaml")
    parser.add_argument("--once", action="store_true")
    parser.add_argument("--dry-run", action="store_true", help="Score and route without sending or saving state")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--init-config", action="store_true", help="Create a config.yaml template and exit")
    parser.add_argument("--test-notify", action="store_true", help="Send a test notification and exit")
    return parser.parse_args()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")


def _build_feeds(config: Config, state: State) -> list[BaseFeed]:
    settings = config.settings
    feeds: list[BaseFeed] = []

    for kind, enabled in (("device", config.feeds.openfda_device), ("drug", config.feeds.openfda_drug)):
        if enabled:
            feeds.append(
                OpenFDAEnforcementFeed(
                    OpenFDASettings(
                        kind=kind,
                        max_results=settings.max_results_per_feed,
                        timeout_seconds=settings.request_timeout_seconds,
                        user_agent=settings.user_agent,
                    )
                )
            )

    if config.feeds.drug_shortages:
        feeds.append(
            DrugShortageFeed(
                OpenFDASettings(
                    kind="drug",
                    max_results=settings.max_results_per_feed,
                    timeout_seconds=settings.request_timeout_seconds,
                    user_agent=settings.user_agent,
                )
            )
        )

    if config.feeds.cms.enabled and config.feeds.cms.url:
        feeds.append(
            CMSFeeScheduleFeed(
                CMSSettings(
                    url=config.feeds.cms.url,
                    timeout_seconds=settings.request_timeout_seconds,
                    user_agent=settings.user_agent,
                ),
                previous_rates=state.cms_rates,
            )
        )

    if config.feeds.federal_register.enabled:
        feeds.append(
            FederalRegisterFeed(
                FederalRegisterSettings(
                    term=config.feeds.federal_register.term,
                    max_results=settings.max_results_per_feed,
                    timeout_seconds=settings.request_timeout_seconds,
                    user_agent=settings.user_agent,
                )
            )
        )

    for name, entries in (
        ("state-bulletins", config.feeds.state_bulletins),
        ("vendor-advisories", config.feeds.vendor_advisories),
    ):
        if not entries:
            continue
        sources = [RSSSource(name=item.name, url=item.url, source=item.source) for item in entries]
        feeds.append(
            RSSFeed(
                RSSSettings(
                    sources=sources,
                    timeout_seconds=settings.request_timeout_seconds,
                    user_agent=settings.user_agent,
                ),
                name=name,
            )
        )

    return feeds


def _build_enricher(config: Config) -> BaseEnricher | None:
    enrichment = config.enrichment
    if enrichment.provider != "perplexity" or not enrichment.api_key:
        return None
    return PerplexityEnricher(
        PerplexitySettings(
            api_key=enrichment.api_key,
            model=enrichment.model,
            timeout_seconds=config.settings.request_timeout_seconds,
            user_agent=config.settings.user_agent,
        )
    )


def _init_config(target: Path) -> None:
    if target.exists():
        raise SystemExit(f"Config already exists at {target}")
    root = Path(__file__).resolve().parents[1]
    template = root / "config.example.yaml"
    if not template.exists():
        raise SystemExit("config.example.yaml not found")
    target.write_text(template.read_text(encoding="utf-8"), encoding="utf-8")
    print(f"Wrote config template to {target}")


def _build_test_message() -> NotificationMessage:
    return NotificationMessage(
        title="regalert test alert: delivery verified",
        summary="This is a synthetic test notification to verify your delivery settings.",
        category="Informational",
        score=0,
        confidence="High",
        url="",
        source="test",
        published=datetime.now(timezone.utc),
        content_variant="informational-template",
    )


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
