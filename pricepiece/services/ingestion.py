"""
Ingestion Merger

Downloads the Cardmarket product list and price guide, computes price deltas,
enriches products with CardTrader cross-references, then:

- upserts every product by idProduct (fields from the current fetch and
  enrichment only; enrichment fields not produced this run are unset)
- appends every price entry to priceHistory with one shared timestamp

Only one run may write at a time; an overlapping call raises
RunInProgressError.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from pydantic import ValidationError
from pymongo import UpdateOne
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..config import BULK_WRITE_BATCH_SIZE, DELTA_MAX_WORKERS, DELTA_REFERENCE_FIELD
from ..database import DatabaseManager, get_database_manager
from ..exceptions import FetchError, PersistenceError, RunInProgressError
from ..models import MergeStats, PriceRecord, Product
from ..utils import chunked, extract_card_code, get_current_utc_datetime
from .blueprints import ENRICHMENT_FIELDS, build_blueprint_index, enrichment_fields
from .feeds import fetch_price_guides, fetch_products
from .price_delta import calculate_price_deltas

logger = logging.getLogger(__name__)

_run_lock = threading.Lock()


def build_product_document(product: Dict[str, Any], blueprint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Catalogue document for one fetched product.

    Keys the fetched entry carries keep their value even when it is None, so
    the upsert can clear them. Model defaults the entry never set are dropped.

    Raises:
        FetchError: If the product entry does not validate
    """
    raw = {key: value for key, value in product.items() if key != '_id'}
    raw['cardCode'] = extract_card_code(raw.get('name'))
    if blueprint:
        raw.update(enrichment_fields(blueprint))
    try:
        dumped = Product.model_validate(raw).model_dump(by_alias=True)
    except ValidationError as e:
        raise FetchError(f"Malformed product {product.get('idProduct')}: {e}") from e
    return {key: value for key, value in dumped.items() if value is not None or key in raw}


def build_product_upsert(document: Dict[str, Any]) -> UpdateOne:
    """
    Overwrite-on-match, insert-on-miss, keyed by idProduct.

    None values and enrichment fields not produced this run are unset.
    """
    values = {key: value for key, value in document.items() if value is not None}
    cleared = {key for key, value in document.items() if value is None}
    cleared.update(field for field in ENRICHMENT_FIELDS if field not in values)
    update: Dict[str, Any] = {'$set': values}
    if cleared:
        update['$unset'] = {field: '' for field in sorted(cleared)}
    return UpdateOne({'idProduct': document['idProduct']}, update, upsert=True)


def build_price_document(entry: Dict[str, Any], timestamp: datetime) -> Dict[str, Any]:
    """
    New priceHistory document stamped with the run timestamp.

    Raises:
        FetchError: If the price entry does not validate
    """
    try:
        record = PriceRecord.model_validate({**entry, 'timestamp': timestamp})
    except ValidationError as e:
        raise FetchError(f"Malformed price entry {entry.get('idProduct')}: {e}") from e
    return record.model_dump(by_alias=True, exclude_none=True)


class IngestionMerger:
    """Reconciles the bulk feeds against MongoDB."""

    def __init__(
        self,
        products_collection: Collection,
        price_history_collection: Collection,
        blueprints_collection: Optional[Collection] = None,
        products_fetcher: Callable[[], List[Dict[str, Any]]] = fetch_products,
        prices_fetcher: Callable[[], List[Dict[str, Any]]] = fetch_price_guides,
        batch_size: int = BULK_WRITE_BATCH_SIZE,
        reference_field: str = DELTA_REFERENCE_FIELD,
        max_workers: int = DELTA_MAX_WORKERS,
    ):
        self.products_collection = products_collection
        self.price_history_collection = price_history_collection
        self.blueprints_collection = blueprints_collection
        self.products_fetcher = products_fetcher
        self.prices_fetcher = prices_fetcher
        self.batch_size = batch_size
        self.reference_field = reference_field
        self.max_workers = max_workers

    @classmethod
    def from_database(cls, db_manager: Optional[DatabaseManager] = None, **kwargs) -> "IngestionMerger":
        db_manager = db_manager or get_database_manager()
        return cls(
            products_collection=db_manager.get_products_collection(),
            price_history_collection=db_manager.get_price_history_collection(),
            blueprints_collection=db_manager.get_ctrader_data_collection(),
            **kwargs
        )

    def download_and_merge(self) -> MergeStats:
        """
        Run one full ingestion cycle.

        Returns:
            MergeStats: Run counters

        Raises:
            RunInProgressError: If another run is still writing
            ConfigurationError: If a feed URL is missing
            FetchError: If a feed fails or is malformed
            PersistenceError: If MongoDB rejects a lookup or bulk write
        """
        if not _run_lock.acquire(blocking=False):
            raise RunInProgressError("An ingestion run is already in progress")
        try:
            return self._run()
        finally:
            _run_lock.release()

    def _run(self) -> MergeStats:
        logger.info("Downloading and merging data...")
        products = self.products_fetcher()
        price_guides = self.prices_fetcher()
        stats = MergeStats(products_fetched=len(products), prices_fetched=len(price_guides))
        logger.info(f"Downloaded {len(products)} products and {len(price_guides)} prices")

        priced = calculate_price_deltas(
            price_guides, self.price_history_collection,
            reference_field=self.reference_field, max_workers=self.max_workers
        )

        blueprint_index: Dict[int, Dict[str, Any]] = {}
        if self.blueprints_collection is not None:
            blueprint_index = build_blueprint_index(
                self.blueprints_collection, [product['idProduct'] for product in products]
            )

        documents = [
            build_product_document(product, blueprint_index.get(product['idProduct']))
            for product in products
        ]
        stats.products_enriched = sum(1 for document in documents if document.get('blueprintId') is not None)

        timestamp = get_current_utc_datetime()
        stats.timestamp = timestamp
        price_documents = [build_price_document(entry, timestamp) for entry in priced]

        stats.products_upserted = self._upsert_products(documents)
        stats.prices_inserted = self._insert_prices(price_documents)

        logger.info(f"Database updated with {stats.products_upserted} products and "
                    f"{stats.prices_inserted} price records ({stats.products_enriched} enriched)")
        return stats

    def _upsert_products(self, documents: List[Dict[str, Any]]) -> int:
        operations = [build_product_upsert(document) for document in documents]
        try:
            for batch in chunked(operations, self.batch_size):
                self.products_collection.bulk_write(batch, ordered=False)
        except PyMongoError as e:
            raise PersistenceError(f"Product bulk upsert failed: {e}") from e
        return len(operations)

    def _insert_prices(self, documents: List[Dict[str, Any]]) -> int:
        try:
            for batch in chunked(documents, self.batch_size):
                self.price_history_collection.insert_many(batch, ordered=False)
        except PyMongoError as e:
            raise PersistenceError(f"Price history insert failed: {e}") from e
        return len(documents)


def download_and_merge(db_manager: Optional[DatabaseManager] = None) -> MergeStats:
    """Run one ingestion cycle against the shared database connection."""
    return IngestionMerger.from_database(db_manager).download_and_merge()


def is_run_in_progress() -> bool:
    return _run_lock.locked()
