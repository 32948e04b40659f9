"""Product catalog API endpoints."""

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from catalog import CatalogQuery, SearchParams
from config import settings_conf
from ..deps import get_catalog

# Create router
router = APIRouter(
    prefix="/api",
    tags=["Products"]
)

def _response_time(start: float) -> str:
    return f"{int((time.perf_counter() - start) * 1000)}ms"

@router.get("/products")
async def search_products(
    q: str = Query(''),
    category: Optional[str] = Query(None),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    catalog: CatalogQuery = Depends(get_catalog)
) -> Dict[str, Any]:
    """Search active products by name or description, best sellers first.

    Results are served from the cache when possible; the response says which.
    """
    start = time.perf_counter()
    params = SearchParams(
        term=q,
        category=category,
        page=page,
        limit=settings_conf['default_page_size'] if limit is None else limit
    )
    result = await catalog.search_products(params)
    return {**result, 'responseTime': _response_time(start)}

@router.get("/products/{product_id}")
async def get_product(
    product_id: int,
    catalog: CatalogQuery = Depends(get_catalog)
) -> Dict[str, Any]:
    """Get an active product with its latest reviews."""
    start = time.perf_counter()
    result = await catalog.get_product(product_id)
    return {**result, 'responseTime': _response_time(start)}

@router.get("/categories")
async def get_categories(catalog: CatalogQuery = Depends(get_catalog)) -> List[Dict[str, Any]]:
    """Get all categories."""
    return await catalog.get_categories()
