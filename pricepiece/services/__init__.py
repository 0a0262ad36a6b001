"""
Services package for PricePiece

Bulk feed fetchers, price delta calculation, CardTrader blueprint sync and
the ingestion merger.
"""
