"""
Test configuration and fixtures for PricePiece tests.

This module provides pytest fixtures for in-memory MongoDB collections,
feed payloads and external HTTP mocking to ensure isolated and reliable
test execution.
"""

import os

# CRITICAL: Set test environment variables BEFORE any other imports
# Configuration constants are read once when pricepiece.config is imported
os.environ.update({
    "TESTING": "true",
    "MONGODB_CONNECTION_STRING": "mongodb://localhost:27017/pricepiece_test",
    "MONGODB_DATABASE_NAME": "pricepiece_test",
    "PRODUCTS_URL": "https://feeds.test/products_singles_18.json",
    "PRICES_URL": "https://feeds.test/price_guide_18.json",
    "CTRADER_AUTH_TOKEN": "test-token",
    "PROXY_LIST": "",
    "LOG_LEVEL": "WARNING",
})

import sys
from typing import Any, Dict, List
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from tests.fixtures.mock_services import FakeCollection, MockCardmarketFeeds


@pytest.fixture(scope="function")
def products_collection() -> FakeCollection:
    """Empty in-memory products collection."""
    return FakeCollection()


@pytest.fixture(scope="function")
def price_history_collection() -> FakeCollection:
    """Empty in-memory priceHistory collection."""
    return FakeCollection()


@pytest.fixture(scope="function")
def blueprints_collection() -> FakeCollection:
    """Empty in-memory ctraderData collection."""
    return FakeCollection()


@pytest.fixture(scope="function")
def sample_products() -> List[Dict[str, Any]]:
    """Products as they appear in the Cardmarket singles feed."""
    return MockCardmarketFeeds.get_products_response()["products"]


@pytest.fixture(scope="function")
def sample_price_guides() -> List[Dict[str, Any]]:
    """Entries as they appear in the Cardmarket price guide."""
    return MockCardmarketFeeds.get_price_guide_response()["priceGuides"]


@pytest.fixture(scope="function")
def no_sleep() -> AsyncMock:
    """Async sleep replacement that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture(scope="function", autouse=True)
def isolate_external_calls():
    """Automatically isolate external HTTP calls for all tests.

    This fixture ensures no real feed or CardTrader requests are made.
    """
    with patch("requests.get") as mock_get:
        mock_get.return_value.ok = True
        mock_get.return_value.status_code = 200
        mock_get.return_value.json.return_value = {}
        yield mock_get
