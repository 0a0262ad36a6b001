"""
Database Module

Manages MongoDB connections and provides collection access with proper
resource management and connection pooling. One long-lived client is
shared by the ingestion pipeline and the scraper.
"""

import logging
from typing import Optional
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .config import (
    MONGODB_CONNECTION_STRING,
    MONGODB_DATABASE_NAME,
    MONGODB_CONNECT_TIMEOUT_MS,
    MONGODB_SERVER_SELECTION_TIMEOUT_MS,
    PRODUCTS_COLLECTION,
    PRICE_HISTORY_COLLECTION,
    CTRADER_DATA_COLLECTION,
    CTRADER_EXPANSIONS_COLLECTION,
    require_setting,
)
from .exceptions import PersistenceError

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Database manager for MongoDB operations with connection pooling and
    resource management.
    """

    def __init__(self, connection_string: Optional[str] = None, database_name: Optional[str] = None):
        self._client: Optional[MongoClient] = None
        self._db: Optional[Database] = None
        self.connection_string = connection_string or MONGODB_CONNECTION_STRING
        self.database_name = database_name or MONGODB_DATABASE_NAME

    def get_client(self) -> MongoClient:
        """
        Get MongoDB client connection.

        Returns:
            MongoClient: MongoDB client instance

        Raises:
            ConfigurationError: If no connection string is configured
            PersistenceError: If the server cannot be reached
        """
        if self._client is None:
            connection_string = require_setting('MONGODB_CONNECTION_STRING', self.connection_string)
            client = MongoClient(
                connection_string,
                connectTimeoutMS=MONGODB_CONNECT_TIMEOUT_MS,
                serverSelectionTimeoutMS=MONGODB_SERVER_SELECTION_TIMEOUT_MS
            )
            try:
                # Test connection
                client.admin.command('ping')
            except PyMongoError as e:
                logger.error(f"MongoDB connection failed: {e}")
                client.close()
                raise PersistenceError(f"Failed to connect to MongoDB: {e}") from e

            logger.info("MongoDB connection established successfully")
            self._client = client

        return self._client

    def get_database(self) -> Database:
        """Get database instance."""
        if self._db is None:
            self._db = self.get_client()[self.database_name]
        return self._db

    def get_collection(self, collection_name: str) -> Collection:
        """
        Get collection instance.

        Args:
            collection_name: Name of the collection

        Returns:
            Collection: MongoDB collection instance
        """
        return self.get_database()[collection_name]

    def get_products_collection(self) -> Collection:
        """Get products collection."""
        return self.get_collection(PRODUCTS_COLLECTION)

    def get_price_history_collection(self) -> Collection:
        """Get price history collection."""
        return self.get_collection(PRICE_HISTORY_COLLECTION)

    def get_ctrader_data_collection(self) -> Collection:
        """Get CardTrader blueprints collection."""
        return self.get_collection(CTRADER_DATA_COLLECTION)

    def get_ctrader_expansions_collection(self) -> Collection:
        """Get CardTrader expansions collection."""
        return self.get_collection(CTRADER_EXPANSIONS_COLLECTION)

    def ensure_indexes(self):
        """
        Create the indexes the pipeline relies on.

        The unique index on products.idProduct is what collapses concurrent
        upserts for the same product into a single document.
        """
        try:
            self.get_products_collection().create_index(
                [('idProduct', ASCENDING)], name='idProduct_unique', unique=True
            )
            self.get_price_history_collection().create_index(
                [('idProduct', ASCENDING), ('timestamp', DESCENDING)], name='idProduct_timestamp_idx'
            )
            self.get_price_history_collection().create_index(
                [('timestamp', DESCENDING)], name='timestamp_idx'
            )
            self.get_ctrader_data_collection().create_index(
                [('id', ASCENDING)], name='id_unique', unique=True
            )
            self.get_ctrader_data_collection().create_index(
                [('card_market_ids', ASCENDING)], name='card_market_ids_idx'
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not create indexes: {e}") from e
        logger.info("MongoDB indexes ensured")

    def close(self):
        """Close database connections."""
        if self._client:
            try:
                self._client.close()
                logger.info("Database connections cleaned up")
            finally:
                self._client = None
                self._db = None

    def test_connection(self) -> bool:
        """
        Test database connection.

        Returns:
            bool: True if connection is successful
        """
        try:
            self.get_client().admin.command('ping')
            return True
        except PersistenceError:
            return False
        except PyMongoError as e:
            logger.error(f"Database connection test failed: {e}")
            return False


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def close_database_connections():
    """Close all database connections."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
