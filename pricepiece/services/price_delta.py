"""
Price Delta Calculator

Computes the percentage change of each incoming price-guide entry against the
most recent stored observation for the same product. Lookups are independent
per product, so they run on a thread pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..config import DELTA_LOW_FIELD, DELTA_MAX_WORKERS, DELTA_REFERENCE_FIELD
from ..exceptions import PersistenceError

logger = logging.getLogger(__name__)


def compute_delta(current: Optional[float], previous: Optional[float]) -> float:
    """
    Percentage change from previous to current.

    Returns 0 when either value is missing or the previous value is zero.
    """
    if current is None or not previous:
        return 0.0
    return (current - previous) / previous * 100


def find_latest_price(collection: Collection, id_product: int) -> Optional[Dict[str, Any]]:
    """Most recent price record for a product (sorted by timestamp, newest first)."""
    return collection.find_one({'idProduct': id_product}, sort=[('timestamp', DESCENDING)])


def calculate_entry_delta(entry: Dict[str, Any], collection: Collection,
                          reference_field: str = DELTA_REFERENCE_FIELD,
                          low_field: str = DELTA_LOW_FIELD) -> Dict[str, Any]:
    """Return a copy of the entry with priceDelta and minPriceDelta set."""
    previous = find_latest_price(collection, entry['idProduct']) or {}
    return {
        **entry,
        'priceDelta': compute_delta(entry.get(reference_field), previous.get(reference_field)),
        'minPriceDelta': compute_delta(entry.get(low_field), previous.get(low_field)),
    }


def calculate_price_deltas(price_guides: List[Dict[str, Any]], collection: Collection,
                           reference_field: str = DELTA_REFERENCE_FIELD,
                           max_workers: int = DELTA_MAX_WORKERS) -> List[Dict[str, Any]]:
    """
    Compute deltas for every price-guide entry.

    Args:
        price_guides: Entries from the price-guide feed
        collection: priceHistory collection
        reference_field: Price field used for priceDelta
        max_workers: Thread pool size for the history lookups

    Returns:
        List[Dict]: Entries with deltas, in input order

    Raises:
        PersistenceError: If a history lookup fails
    """
    logger.info(f"Computing price deltas for {len(price_guides)} entries")
    try:
        with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="price_delta") as executor:
            return list(executor.map(
                lambda entry: calculate_entry_delta(entry, collection, reference_field),
                price_guides
            ))
    except PyMongoError as e:
        raise PersistenceError(f"Price history lookup failed: {e}") from e
