"""
Resilient Scraper

Scrapes Cardmarket product pages with Playwright on top of a single shared
browser session. Handles rate limiting (HTTP 429) with a bounded retry loop
that either recycles the session behind the next proxy or backs off, and
gives up immediately on anti-bot responses.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .browser_manager import SessionManager
from .config import (
    BROWSER_EXTRA_HEADERS,
    BROWSER_USER_AGENT,
    BROWSER_VIEWPORT,
    CARDMARKET_PRODUCT_URL,
    PLAYWRIGHT_LISTINGS_WAIT_MS,
    PLAYWRIGHT_NAVIGATION_TIMEOUT_MS,
    PLAYWRIGHT_PRODUCT_WAIT_MS,
    SCRAPE_BACKOFF_UNIT,
    SCRAPE_MAX_DELAY,
    SCRAPE_MAX_RETRIES,
    SCRAPE_MIN_DELAY,
    SCRAPE_PROXY_SWITCH_DELAY,
    SCRAPE_ROTATE_EVERY,
    SCRAPE_ROTATION_PAUSE,
    SCRAPE_SETTLE_DELAY,
)
from .exceptions import Blocked, NavigationError, RateLimited
from .models import ScrapeSummary, ScrapedSnapshot
from .page_extractor import (
    LISTINGS_TABLE_SELECTOR,
    PRODUCT_CONTENT_SELECTOR,
    collect_page_content,
    extract_snapshot,
)
from .proxy_rotator import ProxyRotator
from .utils import get_current_utc_datetime, random_delay_seconds

logger = logging.getLogger(__name__)

BLOCKED_STATUSES = (403, 202)

DISMISS_CONSENT_SCRIPT = """
() => {
    const matches = (value) => {
        const text = (value || '').toString().toLowerCase();
        return text.includes('accept') || text.includes('agree');
    };
    const buttons = Array.from(document.querySelectorAll('button, a, div')).filter((el) =>
        matches(el.textContent) || matches(el.id) || matches(el.className)
    );
    if (buttons.length > 0) {
        buttons[0].click();
        return true;
    }
    document.querySelectorAll(
        '[class*="cookie"], [id*="cookie"], [class*="consent"], [id*="consent"]'
    ).forEach((el) => { el.style.display = 'none'; });
    return false;
}
"""

Sleep = Callable[[float], Awaitable[Any]]


class RetryState(Enum):
    """Next step after a rate-limited attempt."""

    IDLE = "idle"
    WAITING_BACKOFF = "waiting_backoff"
    ROTATING_PROXY = "rotating_proxy"
    EXHAUSTED = "exhausted"


def plan_retry(retry_count: int, proxy_count: int,
               max_retries: int = SCRAPE_MAX_RETRIES,
               switch_delay: float = SCRAPE_PROXY_SWITCH_DELAY,
               backoff_unit: float = SCRAPE_BACKOFF_UNIT) -> Tuple[RetryState, float]:
    """
    Decide how to react to a 429.

    Args:
        retry_count: Retries already performed for this target
        proxy_count: Number of configured proxies

    Returns:
        Tuple[RetryState, float]: Next state and the delay to wait before retrying
    """
    if retry_count >= max_retries:
        return RetryState.EXHAUSTED, 0
    if proxy_count > 1:
        return RetryState.ROTATING_PROXY, switch_delay
    return RetryState.WAITING_BACKOFF, (retry_count + 1) * backoff_unit


class ResilientScraper:
    """Sequential Cardmarket page scraper owning one browser session and proxy cursor."""

    def __init__(
        self,
        sessions: Optional[SessionManager] = None,
        rotator: Optional[ProxyRotator] = None,
        products_collection: Optional[Collection] = None,
        sleep: Sleep = asyncio.sleep,
        product_url: str = CARDMARKET_PRODUCT_URL,
        max_retries: int = SCRAPE_MAX_RETRIES,
        rotate_every: int = SCRAPE_ROTATE_EVERY,
        min_delay: float = SCRAPE_MIN_DELAY,
        max_delay: float = SCRAPE_MAX_DELAY,
        settle_delay: float = SCRAPE_SETTLE_DELAY,
    ):
        if sessions is None:
            sessions = SessionManager(rotator if rotator is not None else ProxyRotator())
        self.sessions = sessions
        self.rotator = sessions.rotator
        self.products_collection = products_collection
        self._sleep = sleep
        self.product_url = product_url
        self.max_retries = max_retries
        self.rotate_every = rotate_every
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.settle_delay = settle_delay

    async def scrape_page(self, id_product: int, retry_count: int = 0) -> Optional[ScrapedSnapshot]:
        """
        Scrape a single product page.

        Args:
            id_product: Cardmarket product id
            retry_count: Retries already spent on this target

        Returns:
            Optional[ScrapedSnapshot]: Snapshot, or None when the target failed
        """
        state = RetryState.IDLE
        while True:
            try:
                return await self._attempt(id_product)
            except RateLimited:
                state, wait = plan_retry(retry_count, len(self.rotator), self.max_retries)
                if state is RetryState.EXHAUSTED:
                    logger.error(f"✗ Rate limit exceeded after {self.max_retries} retries for product {id_product}")
                    return None

                retry_count += 1
                if state is RetryState.ROTATING_PROXY:
                    logger.warning(f"⚠️ Rate limited (429). Switching to next proxy and retrying "
                                   f"{retry_count}/{self.max_retries}...")
                    try:
                        await self.sessions.ensure(force_new=True)
                    except PlaywrightError as e:
                        logger.error(f"✗ Could not relaunch browser for product {id_product}: {e}")
                        return None
                else:
                    logger.warning(f"⚠️ Rate limited (429). No proxies available. Waiting {wait:.0f}s "
                                   f"before retry {retry_count}/{self.max_retries}...")
                await self._sleep(wait)
            except Blocked as e:
                logger.warning(f"⚠️ Anti-bot detection ({e.status_code}) for product {id_product}")
                return None
            except NavigationError as e:
                logger.warning(f"⚠️ Failed to fetch product {id_product}: {e}")
                return None

    async def _attempt(self, id_product: int) -> ScrapedSnapshot:
        url = self.product_url.format(id_product=id_product)

        try:
            browser = await self.sessions.ensure()
        except PlaywrightError as e:
            raise NavigationError(f"Browser launch failed: {e}") from e

        page = None
        try:
            page = await browser.new_page(
                user_agent=BROWSER_USER_AGENT,
                viewport=BROWSER_VIEWPORT,
                extra_http_headers=BROWSER_EXTRA_HEADERS,
            )

            logger.info(f"Navigating to {url}...")
            response = await page.goto(url, wait_until='domcontentloaded',
                                       timeout=PLAYWRIGHT_NAVIGATION_TIMEOUT_MS)
            if response is None:
                raise NavigationError(f"No response for product {id_product}")

            status = response.status
            logger.info(f"Response status: {status}")
            if status == 429:
                raise RateLimited(status)
            if status in BLOCKED_STATUSES:
                raise Blocked(status)
            if status != 200:
                raise NavigationError(f"Unexpected status {status}")

            await self._sleep(self.settle_delay)
            await self._dismiss_consent(page)
            await self._sleep(self.settle_delay)
            await self._wait_for(page, PRODUCT_CONTENT_SELECTOR, PLAYWRIGHT_PRODUCT_WAIT_MS, "product content")
            await self._wait_for(page, LISTINGS_TABLE_SELECTOR, PLAYWRIGHT_LISTINGS_WAIT_MS, "articles table")

            content = await collect_page_content(page)
            snapshot = extract_snapshot(id_product, content)
            logger.info(f"✓ Scraped product {id_product} - found {len(snapshot.listings)} listings")
            return snapshot

        except PlaywrightError as e:
            raise NavigationError(str(e)) from e
        finally:
            if page is not None:
                try:
                    await page.close()
                except PlaywrightError as e:
                    logger.debug(f"Error closing page: {e}")

    async def _dismiss_consent(self, page):
        try:
            clicked = await page.evaluate(DISMISS_CONSENT_SCRIPT)
            logger.debug("Cookie banner clicked" if clicked else "Cookie banner hidden")
        except PlaywrightError as e:
            logger.debug(f"No cookie banner manipulation needed: {e}")

    async def _wait_for(self, page, selector: str, timeout_ms: int, label: str) -> bool:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            logger.debug(f"{label} loaded")
            return True
        except PlaywrightTimeoutError:
            logger.warning(f"⚠️ Timeout waiting for {label} - trying to continue anyway")
            return False

    def save_snapshot(self, snapshot: ScrapedSnapshot):
        """Overwrite the scrapedData cache field on the product document."""
        self.products_collection.update_one(
            {'idProduct': snapshot.id_product},
            {'$set': {
                'scrapedData': snapshot.to_document(),
                'lastScraped': get_current_utc_datetime(),
            }}
        )

    async def scrape_all(self, limit: Optional[int] = None) -> ScrapeSummary:
        """
        Scrape every product in storage, one at a time.

        Args:
            limit: Maximum number of products to scrape (None for all)

        Returns:
            ScrapeSummary: Success and failure counters
        """
        if self.products_collection is None:
            raise ValueError("products_collection is required for batch scraping")

        logger.info("Starting CardMarket scraper...")
        products = list(
            self.products_collection.find({}, {'idProduct': 1, 'name': 1}).limit(limit or 0)
        )
        summary = ScrapeSummary(total=len(products))
        logger.info(f"Found {len(products)} products to scrape")

        async with self.sessions:
            for i, product in enumerate(products):
                id_product = product.get('idProduct')
                logger.info(f"[{i + 1}/{len(products)}] Scraping product {id_product} - {product.get('name')}")

                if self.rotator.has_multiple and i > 0 and i % self.rotate_every == 0:
                    logger.info(f"Rotating proxy after {i} requests...")
                    try:
                        await self.sessions.ensure(force_new=True)
                    except PlaywrightError as e:
                        logger.error(f"Proxy rotation failed: {e}")
                    await self._sleep(SCRAPE_ROTATION_PAUSE)

                snapshot = await self.scrape_page(id_product)
                if snapshot is not None:
                    try:
                        self.save_snapshot(snapshot)
                        summary.success += 1
                    except PyMongoError as e:
                        logger.error(f"✗ Could not save scraped data for product {id_product}: {e}")
                        summary.failed += 1
                else:
                    summary.failed += 1

                if i < len(products) - 1:
                    delay = random_delay_seconds(self.min_delay, self.max_delay)
                    logger.info(f"Waiting {delay:.0f}s before next request...")
                    await self._sleep(delay)

        logger.info("=== Scraping Complete ===")
        logger.info(f"Total: {summary.total}")
        logger.info(f"Success: {summary.success}")
        logger.info(f"Failed: {summary.failed}")
        return summary

    async def scrape_one(self, id_product: int) -> Optional[Dict[str, Any]]:
        """Scrape a single product without persisting, then release the browser."""
        async with self.sessions:
            snapshot = await self.scrape_page(id_product)
        return snapshot.to_document() if snapshot else None
