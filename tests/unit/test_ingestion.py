"""
Unit tests for services/ingestion.py module.

Runs the merger against in-memory collections with injected feed fetchers.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import BulkWriteError, PyMongoError

from pricepiece.exceptions import FetchError, PersistenceError, RunInProgressError
from pricepiece.services import ingestion
from pricepiece.services.ingestion import (
    IngestionMerger,
    build_price_document,
    build_product_document,
    build_product_upsert,
    download_and_merge,
    is_run_in_progress,
)
from tests.fixtures.mock_services import FakeCollection, MockCardTraderAPI, MockCardmarketFeeds, make_response

TIMESTAMP = datetime(2025, 1, 15, 2, 0, tzinfo=timezone.utc)


def make_merger(products, price_guides, products_collection, price_history_collection, **kwargs):
    return IngestionMerger(
        products_collection,
        price_history_collection,
        products_fetcher=lambda: products,
        prices_fetcher=lambda: price_guides,
        **kwargs
    )


class TestDocumentBuilders:
    """Test product and price document construction."""

    def test_product_document_adds_card_code(self, sample_products):
        document = build_product_document(sample_products[0])
        assert document["idProduct"] == 1001
        assert document["cardCode"] == "OP01-003"
        assert "blueprintId" not in document

    def test_product_document_without_code(self, sample_products):
        document = build_product_document(sample_products[2])
        assert document["cardCode"] is None
        assert "blueprintId" not in document

    def test_product_document_keeps_null_feed_fields(self):
        document = build_product_document({"idProduct": 1, "name": "X", "idMetacard": None, "rarity": None})
        assert document["idMetacard"] is None
        assert document["rarity"] is None
        assert "idExpansion" not in document

    def test_product_document_drops_mongo_id(self):
        document = build_product_document({"_id": "abc", "idProduct": 1, "name": "X"})
        assert "_id" not in document

    def test_product_document_with_blueprint(self, sample_products):
        blueprint = {"id": 50001, "big_image": "/uploads/blueprints/image/50001/show_luffy-op01-003.jpg"}

        document = build_product_document(sample_products[0], blueprint)

        assert document["blueprintId"] == 50001
        assert document["externalUrl"] == "https://www.cardtrader.com/cards/luffy-op01-003"
        assert document["imageUrl"].startswith("https://cardtrader.com/uploads/")

    def test_malformed_product(self):
        with pytest.raises(FetchError):
            build_product_document({"idProduct": "not-a-number", "name": "X"})

    def test_upsert_unsets_missing_enrichment(self):
        operation = build_product_upsert({"idProduct": 1, "name": "X", "blueprintId": 5})

        assert operation._filter == {"idProduct": 1}
        assert operation._upsert is True
        assert operation._doc["$set"]["blueprintId"] == 5
        assert set(operation._doc["$unset"]) == {"externalUrl", "imageUrl", "fixedProperties"}

    def test_upsert_unsets_null_fields(self):
        operation = build_product_upsert({"idProduct": 1, "name": "X", "idMetacard": None, "cardCode": None})

        assert "idMetacard" not in operation._doc["$set"]
        assert "cardCode" not in operation._doc["$set"]
        assert {"idMetacard", "cardCode"} <= set(operation._doc["$unset"])
        assert operation._doc["$set"]["name"] == "X"

    def test_price_document(self):
        document = build_price_document({"idProduct": 1001, "avg1": 10.0, "priceDelta": 0.0}, TIMESTAMP)
        assert document["timestamp"] == TIMESTAMP
        assert document["avg1"] == 10.0
        assert "trend" not in document

    def test_malformed_price(self):
        with pytest.raises(FetchError):
            build_price_document({"idProduct": 1001, "avg1": "n/a"}, TIMESTAMP)


class TestIngestionMerger:
    """Test full merge runs."""

    def test_first_run(self, sample_products, sample_price_guides, products_collection, price_history_collection):
        merger = make_merger(sample_products, sample_price_guides, products_collection, price_history_collection)

        stats = merger.download_and_merge()

        assert stats.products_fetched == 3
        assert stats.products_upserted == 3
        assert stats.prices_inserted == 2
        assert products_collection.count_documents() == 3
        assert price_history_collection.count_documents() == 2
        record = price_history_collection.find_one({"idProduct": 1001})
        assert record["priceDelta"] == 0
        assert record["timestamp"] == stats.timestamp

    def test_rerun_does_not_duplicate_products(self, sample_products, sample_price_guides,
                                               products_collection, price_history_collection):
        merger = make_merger(sample_products, sample_price_guides, products_collection, price_history_collection)

        merger.download_and_merge()
        merger.download_and_merge()

        assert products_collection.count_documents() == 3
        assert products_collection.count_documents({"idProduct": 1001}) == 1
        assert price_history_collection.count_documents({"idProduct": 1001}) == 2

    def test_price_delta_against_previous_run(self, products_collection, price_history_collection):
        products = [{"idProduct": 1001, "name": "Monkey.D.Luffy (OP01-003)"}]
        make_merger(products, [{"idProduct": 1001, "avg1": 10.0}],
                    products_collection, price_history_collection).download_and_merge()

        make_merger(products, [{"idProduct": 1001, "avg1": 12.0}],
                    products_collection, price_history_collection).download_and_merge()

        records = {record["avg1"]: record for record in price_history_collection.find({"idProduct": 1001})}
        assert records[10.0]["priceDelta"] == 0
        assert records[12.0]["priceDelta"] == pytest.approx(20.0)

    def test_shared_run_timestamp(self, sample_products, sample_price_guides,
                                  products_collection, price_history_collection):
        stats = make_merger(sample_products, sample_price_guides, products_collection,
                            price_history_collection).download_and_merge()

        timestamps = {record["timestamp"] for record in price_history_collection.find()}
        assert timestamps == {stats.timestamp}

    def test_price_for_unknown_product_is_recorded(self, products_collection, price_history_collection):
        stats = make_merger([], [{"idProduct": 4242, "avg1": 1.0}],
                            products_collection, price_history_collection).download_and_merge()

        assert stats.prices_inserted == 1
        assert products_collection.count_documents() == 0

    def test_null_feed_fields_clear_stored_values(self, products_collection, price_history_collection):
        first = {"idProduct": 1001, "name": "Monkey.D.Luffy (OP01-003)", "idMetacard": 401, "idExpansion": 7}
        second = {"idProduct": 1001, "name": "Monkey.D.Luffy (OP01-003)", "idMetacard": None, "idExpansion": None}

        make_merger([first], [], products_collection, price_history_collection).download_and_merge()
        make_merger([second], [], products_collection, price_history_collection).download_and_merge()

        product = products_collection.find_one({"idProduct": 1001})
        assert product.get("idMetacard") is None
        assert product.get("idExpansion") is None
        assert product["cardCode"] == "OP01-003"

    def test_upsert_keeps_scraped_cache_and_drops_stale_enrichment(self, products_collection,
                                                                   price_history_collection):
        products_collection.insert_one({
            "idProduct": 1001,
            "name": "Old name",
            "blueprintId": 50001,
            "scrapedData": {"title": "Luffy"},
        })

        make_merger([{"idProduct": 1001, "name": "Monkey.D.Luffy (OP01-003)"}], [],
                    products_collection, price_history_collection).download_and_merge()

        product = products_collection.find_one({"idProduct": 1001})
        assert product["name"] == "Monkey.D.Luffy (OP01-003)"
        assert "blueprintId" not in product
        assert product["scrapedData"] == {"title": "Luffy"}

    def test_enriches_from_blueprints(self, sample_products, sample_price_guides, products_collection,
                                      price_history_collection, blueprints_collection):
        item = MockCardTraderAPI.get_blueprints_response()[0]
        blueprints_collection.insert_one({
            "id": item["id"],
            "card_market_ids": item["card_market_ids"],
            "fixed_properties": item["fixed_properties"],
            "big_image": item["image"]["url"],
        })
        merger = make_merger(sample_products, sample_price_guides, products_collection,
                             price_history_collection, blueprints_collection=blueprints_collection)

        stats = merger.download_and_merge()

        assert stats.products_enriched == 1
        luffy = products_collection.find_one({"idProduct": 1001})
        assert luffy["blueprintId"] == 50001
        assert luffy["externalUrl"].startswith("https://www.cardtrader.com/cards/")
        assert "blueprintId" not in products_collection.find_one({"idProduct": 1002})

    def test_batches_writes(self, sample_products, sample_price_guides,
                            products_collection, price_history_collection):
        merger = make_merger(sample_products, sample_price_guides, products_collection,
                             price_history_collection, batch_size=2)

        merger.download_and_merge()

        assert products_collection.bulk_calls == [2, 1]
        assert price_history_collection.insert_calls == [2]

    def test_fetch_failure_writes_nothing(self, products_collection, price_history_collection):
        def failing_fetch():
            raise FetchError("HTTP error! status: 503", status_code=503)

        merger = IngestionMerger(products_collection, price_history_collection,
                                 products_fetcher=lambda: [{"idProduct": 1, "name": "X"}],
                                 prices_fetcher=failing_fetch)

        with pytest.raises(FetchError):
            merger.download_and_merge()

        assert products_collection.count_documents() == 0
        assert price_history_collection.count_documents() == 0
        assert not is_run_in_progress()

    def test_bulk_write_failure(self, sample_products, price_history_collection):
        products_collection = MagicMock()
        products_collection.bulk_write.side_effect = BulkWriteError({"writeErrors": []})
        merger = make_merger(sample_products, [], products_collection, price_history_collection)

        with pytest.raises(PersistenceError):
            merger.download_and_merge()

    def test_insert_failure(self, sample_price_guides, products_collection):
        history = MagicMock()
        history.find_one.return_value = None
        history.insert_many.side_effect = PyMongoError("disk full")
        merger = make_merger([], sample_price_guides, products_collection, history)

        with pytest.raises(PersistenceError):
            merger.download_and_merge()


class TestRunLock:
    """Test that overlapping runs are rejected."""

    def test_overlapping_run_rejected(self, products_collection, price_history_collection):
        merger = make_merger([], [], products_collection, price_history_collection)

        ingestion._run_lock.acquire()
        try:
            assert is_run_in_progress()
            with pytest.raises(RunInProgressError):
                merger.download_and_merge()
        finally:
            ingestion._run_lock.release()

        assert not is_run_in_progress()

    def test_run_from_inside_fetch_is_rejected(self, products_collection, price_history_collection):
        """A second run started while the first is downloading cannot write."""
        errors = []

        def reentrant_fetch():
            try:
                make_merger([], [], products_collection, price_history_collection).download_and_merge()
            except RunInProgressError as e:
                errors.append(e)
            return []

        IngestionMerger(products_collection, price_history_collection,
                        products_fetcher=reentrant_fetch, prices_fetcher=lambda: []).download_and_merge()

        assert len(errors) == 1


class TestDownloadAndMerge:
    """Test the module-level entry point."""

    def test_uses_database_collections(self, isolate_external_calls, products_collection,
                                       price_history_collection, blueprints_collection):
        def fake_get(url, timeout=None):
            if "price_guide" in url:
                return make_response(MockCardmarketFeeds.get_price_guide_response())
            return make_response(MockCardmarketFeeds.get_products_response())

        isolate_external_calls.side_effect = fake_get
        db_manager = MagicMock()
        db_manager.get_products_collection.return_value = products_collection
        db_manager.get_price_history_collection.return_value = price_history_collection
        db_manager.get_ctrader_data_collection.return_value = blueprints_collection

        stats = download_and_merge(db_manager)

        assert stats.products_upserted == 3
        assert stats.prices_inserted == 2
        assert products_collection.count_documents() == 3
