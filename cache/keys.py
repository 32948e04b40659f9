"""Cache key derivation.

Search keys are a plain concatenation of the normalized query fields, so equal
queries share an entry and listing pages can be dropped by prefix.
"""
from typing import Optional

SEARCH_PREFIX = 'products:search:'
PRODUCT_PREFIX = 'product:'
CATEGORIES_KEY = 'categories:all'

ALL_CATEGORIES = 'all'

def search_key(term: str, category: Optional[int], page: int, limit: int) -> str:
    """Key for one page of search results.

    Callers pass already-normalized values; see catalog.SearchParams.
    """
    category_part = ALL_CATEGORIES if category is None else str(category)
    return f"{SEARCH_PREFIX}{term}:{category_part}:{page}:{limit}"

def product_key(product_id: int) -> str:
    """Key for a product detail payload."""
    return f"{PRODUCT_PREFIX}{product_id}"
