"""
Page Extractor

Turns a rendered Cardmarket product page into a ScrapedSnapshot.

The browser side only collects raw text (per-selector title/image candidates,
listing row cell texts, body text). Everything after that is plain Python:
ordered strategy lists evaluated first-match-wins, so extraction can be
tested without a browser and never raises on missing elements.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import SCRAPE_MAX_ROWS, SCRAPE_PRICE_CEILING
from .models import ListingRow, PriceRange, ScrapedSnapshot
from .utils import first_match, iter_price_candidates, is_plausible_price

logger = logging.getLogger(__name__)

TITLE_SELECTORS = ['h1.page-title', 'h1', '.product-name', '.product-title', '[class*="ProductTitle"]']
IMAGE_SELECTORS = ['.product-image img', '.card-image img', 'img[alt*="card"]', 'img.product-img', '.image-container img']
ROW_SELECTORS = [
    'table.table tbody tr',
    '.article-table tbody tr',
    'table tbody tr[data-article-id]',
    'tr.article-row',
    '[class*="ArticleRow"]',
]
CELL_SELECTOR = 'td, .cell, [class*="Cell"]'

PRODUCT_CONTENT_SELECTOR = 'h1, .product-name, [class*="Product"]'
LISTINGS_TABLE_SELECTOR = 'table.table tbody tr, .article-table tbody tr, [data-article-id]'

PLACEHOLDER_TITLES = {'Singles'}
PLACEHOLDER_IMAGE_MARKERS = ('transparent.gif', 'placeholder')

ARTICLE_COUNT_PATTERN = re.compile(r'(\d+)\s+(?:article|listing)', re.IGNORECASE)

SAMPLE_CELLS = 5
SAMPLE_CELL_LENGTH = 30

COLLECT_CONTENT_SCRIPT = """
({titleSelectors, imageSelectors, rowSelectors, cellSelector, maxRows}) => {
    const textOf = (el) => (el && el.textContent ? el.textContent.trim() : null);
    const titles = titleSelectors.map((sel) => textOf(document.querySelector(sel)));
    const images = imageSelectors.map((sel) => {
        const el = document.querySelector(sel);
        return el ? el.getAttribute('src') : null;
    });
    const rows = rowSelectors.map((sel) =>
        Array.from(document.querySelectorAll(sel)).slice(0, maxRows).map((row) =>
            Array.from(row.querySelectorAll(cellSelector)).map((cell) => textOf(cell) || '')
        )
    );
    const bodyText = document.body ? (document.body.textContent || '') : '';
    return {titles, images, rows, bodyText};
}
"""


@dataclass
class PageContent:
    """Raw text gathered from a rendered page, one entry per selector."""

    titles: List[Optional[str]] = field(default_factory=list)
    images: List[Optional[str]] = field(default_factory=list)
    rows: List[List[List[str]]] = field(default_factory=list)
    body_text: str = ''

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PageContent":
        data = data or {}
        return cls(
            titles=list(data.get('titles') or []),
            images=list(data.get('images') or []),
            rows=[list(rows or []) for rows in (data.get('rows') or [])],
            body_text=data.get('bodyText') or '',
        )


Strategy = Callable[[PageContent], Optional[Any]]


def _title_at(index: int) -> Strategy:
    def strategy(content: PageContent) -> Optional[str]:
        if index >= len(content.titles):
            return None
        title = content.titles[index]
        if not title or title in PLACEHOLDER_TITLES:
            return None
        return title
    return strategy


def _image_at(index: int) -> Strategy:
    def strategy(content: PageContent) -> Optional[str]:
        if index >= len(content.images):
            return None
        src = content.images[index]
        if not src or any(marker in src for marker in PLACEHOLDER_IMAGE_MARKERS):
            return None
        return src
    return strategy


def _rows_at(index: int) -> Strategy:
    def strategy(content: PageContent) -> Optional[List[List[str]]]:
        if index >= len(content.rows) or not content.rows[index]:
            return None
        return content.rows[index]
    return strategy


TITLE_STRATEGIES: List[Strategy] = [_title_at(i) for i in range(len(TITLE_SELECTORS))]
IMAGE_STRATEGIES: List[Strategy] = [_image_at(i) for i in range(len(IMAGE_SELECTORS))]
ROW_STRATEGIES: List[Strategy] = [_rows_at(i) for i in range(len(ROW_SELECTORS))]


def extract_row_price(cells: List[str], ceiling: float = SCRAPE_PRICE_CEILING) -> Optional[float]:
    """
    Scan cells left to right and return the first plausible price.

    Values outside (0, ceiling) are noise and scanning continues.
    """
    for text in cells:
        for value in iter_price_candidates(text):
            if is_plausible_price(value, ceiling):
                return value
    return None


def extract_listings(rows: List[List[str]], max_rows: int = SCRAPE_MAX_ROWS,
                     ceiling: float = SCRAPE_PRICE_CEILING) -> List[ListingRow]:
    """Parse listing rows; rows without a price are skipped."""
    listings = []
    for index, cells in enumerate(rows[:max_rows]):
        price = extract_row_price(cells, ceiling)
        if price is None:
            continue
        listings.append(ListingRow(
            index=index,
            price=price,
            cells=[cell[:SAMPLE_CELL_LENGTH] for cell in cells[:SAMPLE_CELLS]],
        ))
    return listings


def compute_price_range(prices: List[float], ceiling: float = SCRAPE_PRICE_CEILING) -> Optional[PriceRange]:
    """Aggregate min/max/avg/count over plausible prices."""
    accepted = [price for price in prices if is_plausible_price(price, ceiling)]
    if not accepted:
        return None
    return PriceRange(
        min=min(accepted),
        max=max(accepted),
        avg=sum(accepted) / len(accepted),
        count=len(accepted),
    )


def extract_article_count(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = ARTICLE_COUNT_PATTERN.search(text)
    return int(match.group(1)) if match else None


def extract_snapshot(id_product: int, content: PageContent,
                     max_rows: int = SCRAPE_MAX_ROWS,
                     ceiling: float = SCRAPE_PRICE_CEILING) -> ScrapedSnapshot:
    """
    Build a snapshot from collected page content.

    Args:
        id_product: Cardmarket product id
        content: Raw page content
        max_rows: Maximum listing rows to inspect
        ceiling: Prices at or above this value are discarded

    Returns:
        ScrapedSnapshot: Every field is optional except the product id
    """
    rows = first_match(ROW_STRATEGIES, content) or []
    listings = extract_listings(rows, max_rows, ceiling)

    snapshot = ScrapedSnapshot(
        idProduct=id_product,
        title=first_match(TITLE_STRATEGIES, content),
        image=first_match(IMAGE_STRATEGIES, content),
        listings=listings,
        priceRange=compute_price_range([listing.price for listing in listings], ceiling),
        articleCount=extract_article_count(content.body_text),
    )

    if not snapshot.title:
        logger.warning(f"No specific product title found for {id_product}")
        logger.debug(f"Page text: {content.body_text[:500]}")

    return snapshot


async def collect_page_content(page, max_rows: int = SCRAPE_MAX_ROWS) -> PageContent:
    """Gather raw text for every selector strategy in one page evaluation."""
    data = await page.evaluate(COLLECT_CONTENT_SCRIPT, {
        'titleSelectors': TITLE_SELECTORS,
        'imageSelectors': IMAGE_SELECTORS,
        'rowSelectors': ROW_SELECTORS,
        'cellSelector': CELL_SELECTOR,
        'maxRows': max_rows,
    })
    return PageContent.from_dict(data)
