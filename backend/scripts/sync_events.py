import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from connectors.portfolio import KalshiPortfolio
from connectors.registry import build_registry
from predictwatch import schemas
from predictwatch.core.config import get_settings
from predictwatch.db import init_db, session_scope
from predictwatch.domain import SiteCredentials
from predictwatch.models import Site
from predictwatch.services.sync_service import SyncService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync prediction-market data into the local cache")
    sub = parser.add_subparsers(dest="command", required=True)

    add_site = sub.add_parser("add-site", help="Register a site to sync")
    add_site.add_argument("--name", required=True)
    add_site.add_argument("--base-url", default="https://kalshi.com")
    add_site.add_argument("--platform", default="kalshi")
    add_site.add_argument("--owner", default="cli")

    sections = sub.add_parser("sections", help="Refresh the sections offered by a site")
    sections.add_argument("--site-id", required=True)

    events = sub.add_parser("events", help="Sync open events for one or more sections")
    events.add_argument("--site-id", required=True)
    events.add_argument(
        "--section",
        action="append",
        default=None,
        metavar="EXTERNAL_ID",
        help="Section external id (repeatable); defaults to every enabled section",
    )

    markets = sub.add_parser("markets", help="Sync the markets of cached events")
    markets.add_argument("event_ids", nargs="+", metavar="EVENT_ID")

    associate = sub.add_parser("associate", help="Cache a single event or market by ticker")
    associate.add_argument("--site-id", required=True)
    associate.add_argument("--kind", choices=("event", "market"), default="event")
    associate.add_argument("ticker")

    prices = sub.add_parser("prices", help="Best-effort price refresh for cached markets")
    prices.add_argument("market_ids", nargs="+", metavar="MARKET_ID")

    portfolio = sub.add_parser("portfolio", help="Print balance and positions for an API key")
    portfolio.add_argument("--site-id", required=True)
    portfolio.add_argument("--api-key-id", required=True)
    portfolio.add_argument("--private-key-file", type=Path, required=True)

    return parser.parse_args(argv)


def _print(model) -> None:
    print(json.dumps(model.model_dump(mode="json"), indent=2))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    init_db()

    if args.command == "add-site":
        with session_scope() as session:
            site = Site(
                owner_id=args.owner,
                name=args.name,
                base_url=args.base_url,
                platform_key=args.platform,
            )
            session.add(site)
            session.flush()
            logger.info("Registered site {} ({})", site.id, site.name)
            print(site.id)
        return 0

    registry = build_registry(settings)
    service = SyncService(registry, settings=settings)
    try:
        if args.command == "sections":
            result = service.sync_sections(service.site_credentials(args.site_id))
            _print(schemas.SectionSyncResult.model_validate(result))
        elif args.command == "events":
            site = service.site_credentials(args.site_id)
            section_ids = args.section
            if not section_ids:
                with session_scope() as session:
                    section_ids = [
                        s.external_id
                        for s in session.get(Site, args.site_id).sections
                        if s.enabled
                    ]
            result = service.sync_events(site, section_ids)
            logger.info(
                "{} new, {} changed, {} removed",
                len(result.new_records),
                len(result.changed_records),
                result.removed_count,
            )
            _print(schemas.EventSyncResult.model_validate(result))
        elif args.command == "markets":
            batch = service.sync_markets_for_events(args.event_ids)
            _print(schemas.BatchMarketSyncResult.model_validate(batch))
            return 1 if batch.failed else 0
        elif args.command == "associate":
            site = service.site_credentials(args.site_id)
            if args.kind == "event":
                association = service.associate_event(site, args.ticker)
                schema = schemas.EventAssociation
            else:
                association = service.associate_market(site, args.ticker)
                schema = schemas.MarketAssociation
            if association is None:
                logger.error("Ticker {} not found", args.ticker)
                return 1
            _print(schema.model_validate(association))
        elif args.command == "prices":
            refreshed = service.refresh_market_prices(args.market_ids)
            _print(schemas.PriceRefreshResult.model_validate(refreshed))
            return 1 if refreshed.failures else 0
        elif args.command == "portfolio":
            stored = service.site_credentials(args.site_id)
            site = SiteCredentials(
                site_id=stored.site_id,
                base_url=stored.base_url,
                platform_key=stored.platform_key,
                api_key_id=args.api_key_id,
                private_key_pem=args.private_key_file.read_text(encoding="utf-8"),
            )
            with KalshiPortfolio.for_site(site, settings=settings) as account:
                data = account.fetch_trading_data()
            print(
                json.dumps(
                    {
                        "balance_dollars": data.balance_dollars,
                        "positions": data.positions,
                        "fills": len(data.fills),
                        "settlements": len(data.settlements),
                    },
                    indent=2,
                )
            )
    finally:
        registry.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
