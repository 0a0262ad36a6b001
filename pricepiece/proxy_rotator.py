"""
Proxy Rotator

Holds an ordered list of proxy endpoints and a rotation cursor. The cursor
lives on the instance owned by one scraper; it is not thread-safe because the
session manager only ever runs one browser at a time.
"""

import logging
from typing import Iterable, List, Optional, Union

from .config import get_proxy_list
from .models import ProxyEndpoint

logger = logging.getLogger(__name__)


class ProxyRotator:
    """Circular proxy rotation."""

    def __init__(self, proxies: Optional[Iterable[Union[str, ProxyEndpoint]]] = None):
        if proxies is None:
            proxies = get_proxy_list()
        self._proxies: List[ProxyEndpoint] = [
            proxy if isinstance(proxy, ProxyEndpoint) else ProxyEndpoint.from_url(proxy)
            for proxy in proxies
        ]
        self._cursor = 0
        logger.info(f"ProxyRotator configured with {len(self._proxies)} proxies")

    def __len__(self) -> int:
        return len(self._proxies)

    @property
    def has_multiple(self) -> bool:
        """Rotation only makes sense with more than one proxy."""
        return len(self._proxies) > 1

    @property
    def cursor(self) -> int:
        return self._cursor

    def next(self) -> Optional[ProxyEndpoint]:
        """
        Return the proxy at the cursor and advance it circularly.

        Returns:
            Optional[ProxyEndpoint]: Next proxy, or None for direct connection
        """
        if not self._proxies:
            return None
        proxy = self._proxies[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._proxies)
        return proxy
