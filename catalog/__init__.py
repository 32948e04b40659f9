"""Catalog module for serving product listings and details.

This module provides:
- Typed, clamped search parameters
- Cache-aside product search, product detail and category queries
- Merchant catalog mutations with cache invalidation (see management.py)

Every read is correct with the cache disabled; the cache only saves the
round-trips to the relational store.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from cache import CacheClient, CATEGORIES_KEY, product_key, search_key
from database.lib.records import to_json_record
from database.lib.search import MAX_PAGE

logger = logging.getLogger(__name__)

class CatalogError(Exception):
    """Base exception for catalog operations."""
    pass

class ProductNotFoundError(CatalogError):
    """Raised when a product does not exist, is inactive, or is not owned by the caller."""
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")

class InvalidProductError(CatalogError):
    """Raised when product fields fail validation."""
    pass

class SearchParams(BaseModel):
    """Recognized search query fields with defaults and clamping."""
    term: str = ''
    category: Optional[int] = None
    page: int = Field(1, le=MAX_PAGE)
    limit: int = 20

    @field_validator('term', mode='before')
    @classmethod
    def normalize_term(cls, value: Any) -> str:
        return '' if value is None else str(value).strip()

    @field_validator('category', mode='before')
    @classmethod
    def normalize_category(cls, value: Any) -> Any:
        # Empty and 'all' both mean no category filter
        if value is None or (isinstance(value, str) and value.strip().lower() in ('', 'all')):
            return None
        return value

    @field_validator('page', 'limit')
    @classmethod
    def at_least_one(cls, value: int) -> int:
        return max(1, value)

    def bounded(self, max_page_size: int) -> 'SearchParams':
        """Copy with limit clamped to max_page_size."""
        return self.model_copy(update={'limit': min(self.limit, max_page_size)})

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def cache_key(self) -> str:
        return search_key(self.term, self.category, self.page, self.limit)

def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)

class CatalogQuery:
    """Cache-aside reads of products and categories."""

    def __init__(
        self,
        store,
        cache: CacheClient,
        list_ttl: Optional[int] = None,
        detail_ttl: Optional[int] = None,
        category_ttl: Optional[int] = None,
        max_page_size: Optional[int] = None
    ) -> None:
        """Initialize the catalog query service.

        Args:
            store: Relational store (PostgresStore or compatible)
            cache: Cache client; a disabled client turns every read into a store query
            list_ttl: TTL in seconds for search pages (default from settings)
            detail_ttl: TTL in seconds for product detail (default from settings)
            category_ttl: TTL in seconds for the category list (default from settings)
            max_page_size: Upper bound for the page size (default from settings)
        """
        from config import settings_conf

        self.store = store
        self.cache = cache
        self.list_ttl = list_ttl or settings_conf['list_cache_ttl']
        self.detail_ttl = detail_ttl or settings_conf['detail_cache_ttl']
        self.category_ttl = category_ttl or settings_conf['category_cache_ttl']
        self.max_page_size = max_page_size or settings_conf['max_page_size']

    async def search_products(self, params: SearchParams) -> Dict[str, Any]:
        """Get one page of active products, best sellers first.

        Args:
            params: Search parameters; limit is clamped to max_page_size

        Returns:
            Dict containing:
                - products: JSON-safe product rows
                - pagination: page, limit, total, totalPages
                - cached: whether the payload came from the cache
        """
        params = params.bounded(self.max_page_size)
        key = params.cache_key
        start = time.perf_counter()

        cached = await self.cache.get_json(key)
        if cached is not None:
            logger.info(f"Cache hit for search {params.term!r} ({_elapsed_ms(start)}ms)")
            return {**cached, 'cached': True}

        rows, total = await self.store.search_products(
            term=params.term,
            category_id=params.category,
            limit=params.limit,
            offset=params.offset
        )

        payload = {
            'products': [to_json_record(row) for row in rows],
            'pagination': {
                'page': params.page,
                'limit': params.limit,
                'total': total,
                'totalPages': (total + params.limit - 1) // params.limit
            }
        }

        await self.cache.set_json(key, payload, self.list_ttl)
        logger.info(f"Database query for search {params.term!r} ({_elapsed_ms(start)}ms)")
        return {**payload, 'cached': False}

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        """Get an active product with its latest reviews.

        Returns:
            Dict containing product, reviews and cached

        Raises:
            ProductNotFoundError: If the product does not exist or is inactive
        """
        key = product_key(product_id)

        cached = await self.cache.get_json(key)
        if cached is not None:
            return {**cached, 'cached': True}

        product = await self.store.get_active_product(product_id)
        if not product:
            raise ProductNotFoundError(product_id)

        reviews = await self.store.get_product_reviews(product_id)
        payload = {
            'product': to_json_record(product),
            'reviews': [to_json_record(review) for review in reviews]
        }

        await self.cache.set_json(key, payload, self.detail_ttl)
        return {**payload, 'cached': False}

    async def get_categories(self) -> List[Dict[str, Any]]:
        """Get all categories in display order."""
        cached = await self.cache.get_json(CATEGORIES_KEY)
        if cached is not None:
            return cached

        categories = [to_json_record(row) for row in await self.store.get_categories()]
        await self.cache.set_json(CATEGORIES_KEY, categories, self.category_ttl)
        return categories

from .management import CatalogManager

__all__ = [
    'CatalogQuery',
    'CatalogManager',
    'SearchParams',
    'CatalogError',
    'ProductNotFoundError',
    'InvalidProductError',
]
