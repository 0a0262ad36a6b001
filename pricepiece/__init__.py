"""
PricePiece Package

Cardmarket product catalogue and price-guide ingestion for the One Piece TCG.
This package provides the bulk feed ingestion pipeline (price deltas, product
upserts, append-only price history) and a resilient Playwright scraper for
individual marketplace pages, both backed by MongoDB.
"""

__version__ = "1.0.0"
__author__ = "PricePiece Team"
