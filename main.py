#!/usr/bin/env python3
"""
PricePiece - Main Entry Point

Cardmarket product catalogue and price history ingestion for the One Piece
TCG, plus a resilient page scraper.

Commands:
- ingest: download the bulk feeds and merge them into MongoDB
- schedule: run the ingestion every day on a cron trigger
- scrape [--limit N]: scrape product pages with Playwright
- scrape-one ID: scrape one product and print the snapshot
- sync-blueprints: refresh CardTrader cross-references
"""

import sys

from pricepiece.app import run_app

if __name__ == "__main__":
    sys.exit(run_app())
