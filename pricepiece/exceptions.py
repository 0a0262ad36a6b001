"""
Exceptions Module

Error taxonomy for ingestion runs and page scraping.
"""

from typing import Optional


class PricePieceError(Exception):
    """Base class for all PricePiece errors."""


class ConfigurationError(PricePieceError):
    """A required endpoint or credential is missing."""


class FetchError(PricePieceError):
    """A bulk feed returned a non-success status or a malformed body."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NavigationError(PricePieceError):
    """The rendering session could not load a target page."""


class RateLimited(PricePieceError):
    """The marketplace answered with HTTP 429."""

    def __init__(self, status_code: int = 429):
        super().__init__(f"Rate limited ({status_code})")
        self.status_code = status_code


class Blocked(PricePieceError):
    """The marketplace answered with an anti-bot status (403/202)."""

    def __init__(self, status_code: int):
        super().__init__(f"Anti-bot detection ({status_code})")
        self.status_code = status_code


class PersistenceError(PricePieceError):
    """A bulk write or lookup was rejected by MongoDB."""


class RunInProgressError(PricePieceError):
    """An ingestion run was requested while another one is still writing."""
