"""
Browser Session Manager for Playwright

Owns a single Chromium instance at a time. Recycling the session launches a
fresh browser behind the next proxy from the rotator.
"""

import logging
from typing import Optional
from playwright.async_api import Browser, Playwright, async_playwright

from .config import PLAYWRIGHT_HEADLESS
from .models import ProxyEndpoint
from .proxy_rotator import ProxyRotator

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-blink-features=AutomationControlled',
    '--disable-dev-shm-usage',
]


class SessionManager:
    """Single-flight browser session with proxy recycling."""

    def __init__(self, rotator: Optional[ProxyRotator] = None, headless: bool = PLAYWRIGHT_HEADLESS):
        self.rotator = rotator if rotator is not None else ProxyRotator()
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._current_proxy: Optional[ProxyEndpoint] = None

    @property
    def is_active(self) -> bool:
        return self._browser is not None

    @property
    def current_proxy(self) -> Optional[ProxyEndpoint]:
        """Proxy attached to the active session, None for direct egress."""
        return self._current_proxy

    async def ensure(self, force_new: bool = False) -> Browser:
        """
        Return the active browser, launching a new one when needed.

        Args:
            force_new: Tear down the current browser and relaunch behind the next proxy

        Returns:
            Browser: Active browser instance

        Raises:
            playwright Error: Launch failures propagate to the caller
        """
        if self._browser is not None and not force_new:
            return self._browser

        await self._close_browser()

        if self._playwright is None:
            self._playwright = await async_playwright().start()

        proxy = self.rotator.next()
        launch_options = {
            'headless': self.headless,
            'args': LAUNCH_ARGS,
            'ignore_default_args': ['--enable-automation'],
        }
        if proxy:
            logger.info(f"Launching browser using proxy: {proxy.masked()}")
            launch_options['proxy'] = proxy.to_playwright()
        else:
            logger.info("Launching browser, no proxy configured, using direct connection")

        self._browser = await self._playwright.chromium.launch(**launch_options)
        self._current_proxy = proxy
        return self._browser

    async def _close_browser(self):
        browser, self._browser = self._browser, None
        self._current_proxy = None
        if browser is not None:
            try:
                await browser.close()
                logger.debug("Browser instance closed")
            except Exception as e:
                logger.error(f"Error closing browser: {e}")

    async def shutdown(self):
        """Tear down the active session and Playwright driver. Idempotent."""
        await self._close_browser()
        playwright, self._playwright = self._playwright, None
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.error(f"Error stopping playwright: {e}")
            logger.info("Browser session released")

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()
