"""Invalidation of cache entries made stale by orders and catalog mutations."""
import logging
from typing import Iterable

from .keys import SEARCH_PREFIX, CATEGORIES_KEY, product_key

logger = logging.getLogger(__name__)

class CacheInvalidator:
    """Drops detail and listing entries for products that changed.

    Listing keys depend on arbitrary query shapes, so they cannot be derived
    from a product id and are removed by prefix scan instead. All methods are
    best-effort: the cache client never raises.
    """

    def __init__(self, cache) -> None:
        self.cache = cache

    async def invalidate_products(self, product_ids: Iterable[int]) -> None:
        """Drop detail entries for product_ids and every search listing page."""
        keys = [product_key(product_id) for product_id in dict.fromkeys(product_ids)]
        removed = await self.cache.delete(*keys)
        pages = await self.cache.delete_prefix(SEARCH_PREFIX)
        logger.debug(f"Invalidated {removed} detail entries and {pages} listing pages")

    async def invalidate_search(self) -> None:
        """Drop every search listing page."""
        pages = await self.cache.delete_prefix(SEARCH_PREFIX)
        logger.debug(f"Invalidated {pages} listing pages")

    async def invalidate_categories(self) -> None:
        await self.cache.delete(CATEGORIES_KEY)
