"""
Bulk Feed Fetchers

Download the full Cardmarket product list and price guide. Each fetch is a
single GET with no retry; any failure propagates to the ingestion run.
"""

import logging
from typing import Any, Dict, List, Optional
import requests

from ..config import FEED_TIMEOUT_SECONDS, PRICES_URL, PRODUCTS_URL, require_setting
from ..exceptions import FetchError

logger = logging.getLogger(__name__)


def fetch_feed(url: str, field: str, timeout: int = FEED_TIMEOUT_SECONDS) -> List[Dict[str, Any]]:
    """
    Fetch a JSON envelope and return its named array.

    Args:
        url: Feed URL
        field: Name of the array field in the envelope
        timeout: Request timeout in seconds

    Returns:
        List[Dict]: Feed entries, each carrying an idProduct

    Raises:
        FetchError: On network failure, non-success status or malformed body
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise FetchError(f"Request to {url} failed: {e}", url=url) from e

    if not response.ok:
        raise FetchError(f"HTTP error! status: {response.status_code}", url=url,
                         status_code=response.status_code)

    try:
        body = response.json()
    except ValueError as e:
        raise FetchError(f"Feed at {url} is not valid JSON", url=url) from e

    entries = body.get(field) if isinstance(body, dict) else None
    if not isinstance(entries, list):
        raise FetchError(f"Feed at {url} has no '{field}' array", url=url)

    for entry in entries:
        if not isinstance(entry, dict) or entry.get('idProduct') is None:
            raise FetchError(f"Feed at {url} contains an entry without idProduct", url=url)

    return entries


def fetch_products(url: Optional[str] = None) -> List[Dict[str, Any]]:
    """Download the full singles product list."""
    logger.info("Downloading products...")
    url = require_setting('PRODUCTS_URL', url or PRODUCTS_URL)
    products = fetch_feed(url, 'products')
    logger.info(f"Downloaded {len(products)} products")
    return products


def fetch_price_guides(url: Optional[str] = None) -> List[Dict[str, Any]]:
    """Download the full price guide."""
    logger.info("Downloading price guide...")
    url = require_setting('PRICES_URL', url or PRICES_URL)
    price_guides = fetch_feed(url, 'priceGuides')
    logger.info(f"Downloaded {len(price_guides)} prices")
    return price_guides
