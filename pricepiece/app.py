"""
Main Application Module

Command-line entry point: one-off ingestion, the cron scheduler, the page
scraper and the CardTrader blueprint sync.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import get_log_level
from .database import close_database_connections, get_database_manager
from .exceptions import PricePieceError
from .scheduler import start_scheduler
from .scraper import ResilientScraper
from .services.blueprints import sync_blueprints
from .services.ingestion import download_and_merge

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None):
    """Configure root logging from LOG_LEVEL."""
    log_level = getattr(logging, (level or get_log_level()).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pricepiece",
        description="Cardmarket catalogue and price history ingestion for One Piece TCG"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("ingest", help="Download feeds and merge them into MongoDB once")
    subparsers.add_parser("schedule", help="Run the ingestion on its cron schedule")

    scrape = subparsers.add_parser("scrape", help="Scrape Cardmarket product pages")
    scrape.add_argument("--limit", type=int, default=None, help="Maximum products to scrape")

    scrape_one = subparsers.add_parser("scrape-one", help="Scrape a single product and print the result")
    scrape_one.add_argument("id_product", type=int, help="Cardmarket idProduct")

    subparsers.add_parser("sync-blueprints", help="Sync CardTrader blueprints into ctraderData")
    return parser


def run_command(args: argparse.Namespace) -> int:
    """Dispatch a parsed command. Returns the process exit code."""
    if args.command == "scrape-one":
        snapshot = asyncio.run(ResilientScraper().scrape_one(args.id_product))
        if snapshot is None:
            logger.error("Failed to scrape product")
            return 1
        print(json.dumps(snapshot, indent=2, default=str))
        return 0

    db_manager = get_database_manager()
    db_manager.ensure_indexes()

    if args.command == "ingest":
        stats = download_and_merge(db_manager)
        logger.info(f"Merged {stats.products_upserted} products")
    elif args.command == "schedule":
        start_scheduler(db_manager=db_manager)
    elif args.command == "scrape":
        scraper = ResilientScraper(products_collection=db_manager.get_products_collection())
        asyncio.run(scraper.scrape_all(args.limit))
    elif args.command == "sync-blueprints":
        sync_blueprints(
            db_manager.get_ctrader_expansions_collection(),
            db_manager.get_ctrader_data_collection()
        )
    return 0


def run_app(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the command and release the database connection."""
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return run_command(args)
    except PricePieceError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        close_database_connections()


if __name__ == "__main__":
    sys.exit(run_app())
