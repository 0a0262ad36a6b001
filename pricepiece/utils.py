"""
Utility functions for PricePiece

Price parsing, card code extraction and small helpers shared by the scraper
and the ingestion pipeline.
"""

import logging
import random
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

# One Piece card codes: OP01-001, ST10-004, EB01-012, PRB01-001, P-001
CARD_CODE_PATTERN = re.compile(r'\b((?:OP|ST|EB|PRB)\d{2}-\d{3}|P-\d{3})\b', re.IGNORECASE)

# Ordered currency patterns: €0.02, 0,02 €, 0.02 (bare), Price: 0.02
PRICE_PATTERNS = [
    re.compile(r'€\s*(\d+[,.]\d{2})'),
    re.compile(r'(\d+[,.]\d{2})\s*€'),
    re.compile(r'^\s*(\d+[,.]\d{2})\s*$'),
    re.compile(r'Price:\s*(\d+[,.]\d{2})', re.IGNORECASE),
]

PROXY_CREDENTIALS_PATTERN = re.compile(r'//[^/@]*:[^/@]*@')


def get_current_utc_datetime() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def extract_card_code(name: Optional[str]) -> Optional[str]:
    """
    Extract the card code from a product name.

    Args:
        name: Product name, e.g. "Monkey.D.Luffy (OP01-003)"

    Returns:
        Optional[str]: Upper-cased card code or None
    """
    if not name:
        return None
    match = CARD_CODE_PATTERN.search(name)
    if match:
        return match.group(1).upper()
    return None


def parse_price_match(match: re.Match) -> Optional[float]:
    try:
        return float(match.group(1).replace(',', '.'))
    except (TypeError, ValueError):
        return None


def iter_price_candidates(text: Optional[str]) -> Iterator[float]:
    """Yield the value matched by each price pattern, in pattern order."""
    if not text:
        return
    for pattern in PRICE_PATTERNS:
        match = pattern.search(text)
        if match:
            value = parse_price_match(match)
            if value is not None:
                yield value


def parse_price(text: Optional[str]) -> Optional[float]:
    """
    Parse the first currency price found in a text.

    Examples:
        "€0,02" -> 0.02, "0.02 €" -> 0.02, "Price: 0.02" -> 0.02
    """
    return next(iter_price_candidates(text), None)


def is_plausible_price(value: Optional[float], ceiling: float) -> bool:
    """Prices at or below zero, or at or above the ceiling, are noise."""
    return value is not None and 0 < value < ceiling


def first_match(strategies: Iterable[Callable[..., Optional[T]]], *args) -> Optional[T]:
    """Evaluate strategies in order and return the first non-None result."""
    for strategy in strategies:
        value = strategy(*args)
        if value is not None:
            return value
    return None


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split a sequence into lists of at most `size` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def mask_proxy_credentials(url: Optional[str]) -> str:
    """Hide credentials in proxy URLs before logging."""
    if not url:
        return ''
    return PROXY_CREDENTIALS_PATTERN.sub('//***:***@', url)


def random_delay_seconds(minimum: float, maximum: float) -> float:
    """Uniform random pacing delay between requests."""
    return random.uniform(minimum, maximum)
