"""
Unit tests for services/feeds.py module.

HTTP is mocked by the autouse isolate_external_calls fixture.
"""

import pytest
import requests

from pricepiece.exceptions import ConfigurationError, FetchError
from pricepiece.services import feeds
from pricepiece.services.feeds import fetch_feed, fetch_price_guides, fetch_products
from tests.fixtures.mock_services import MockCardmarketFeeds, make_response


class TestFetchFeed:
    """Test the shared feed download."""

    def test_returns_named_array(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response(MockCardmarketFeeds.get_products_response())

        products = fetch_feed("https://feeds.test/p.json", "products", timeout=5)

        assert [product["idProduct"] for product in products] == [1001, 1002, 1003]
        isolate_external_calls.assert_called_once_with("https://feeds.test/p.json", timeout=5)

    def test_empty_array_is_valid(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response({"products": []})
        assert fetch_feed("https://feeds.test/p.json", "products") == []

    def test_http_error(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response(MockCardmarketFeeds.get_error_response(), 503)

        with pytest.raises(FetchError) as exc_info:
            fetch_feed("https://feeds.test/p.json", "products")

        assert exc_info.value.status_code == 503
        assert exc_info.value.url == "https://feeds.test/p.json"

    def test_network_failure(self, isolate_external_calls):
        isolate_external_calls.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(FetchError):
            fetch_feed("https://feeds.test/p.json", "products")

    def test_invalid_json(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response(json_error=ValueError("Expecting value"))

        with pytest.raises(FetchError, match="not valid JSON"):
            fetch_feed("https://feeds.test/p.json", "products")

    @pytest.mark.parametrize("body", [
        {"priceGuides": []},
        {"products": {"idProduct": 1}},
        [{"idProduct": 1}],
    ])
    def test_missing_array(self, isolate_external_calls, body):
        isolate_external_calls.return_value = make_response(body)

        with pytest.raises(FetchError):
            fetch_feed("https://feeds.test/p.json", "products")

    def test_entry_without_id_makes_feed_malformed(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response({"products": [{"idProduct": 1}, {"name": "orphan"}]})

        with pytest.raises(FetchError, match="without idProduct"):
            fetch_feed("https://feeds.test/p.json", "products")


class TestFeedFetchers:
    """Test product and price guide fetchers."""

    def test_fetch_products_uses_configured_url(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response(MockCardmarketFeeds.get_products_response())

        products = fetch_products()

        assert len(products) == 3
        assert isolate_external_calls.call_args.args[0] == "https://feeds.test/products_singles_18.json"

    def test_fetch_price_guides(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response(MockCardmarketFeeds.get_price_guide_response())

        price_guides = fetch_price_guides()

        assert [entry["avg1"] for entry in price_guides] == [10.0, 0.3]
        assert isolate_external_calls.call_args.args[0] == "https://feeds.test/price_guide_18.json"

    def test_explicit_url_wins(self, isolate_external_calls):
        isolate_external_calls.return_value = make_response({"priceGuides": []})

        fetch_price_guides("https://other.test/prices.json")

        assert isolate_external_calls.call_args.args[0] == "https://other.test/prices.json"

    def test_missing_url_is_configuration_error(self, monkeypatch, isolate_external_calls):
        monkeypatch.setattr(feeds, "PRODUCTS_URL", None)

        with pytest.raises(ConfigurationError, match="PRODUCTS_URL"):
            fetch_products()
        isolate_external_calls.assert_not_called()
