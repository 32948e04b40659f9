"""REST API module for the storefront.

This module provides HTTP endpoints for:
- Searching products and reading product details and categories
- Placing orders and reading order history
- Merchant product and order management
- Health monitoring

Domain errors raised by the catalog and order packages are turned into
JSON error payloads of the form {"error": ..., "code": ...} here, so routers
only deal with the success path.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Tuple, Type

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cache import CacheInvalidator, init_cache
from catalog import CatalogError, CatalogManager, CatalogQuery, InvalidProductError
from catalog import ProductNotFoundError as CatalogProductNotFoundError
from database import PostgresStore, init_db, close as db_close
from database.exceptions import DatabaseError
from orders import (
    OrderError,
    OrderManager,
    OrderValidationError,
    ProductNotFoundError,
    InsufficientStockError,
    OrderNotFoundError,
    InvalidStatusError,
    OrderConflictError,
    OrderTimeoutError,
)

logger = logging.getLogger(__name__)

# HTTP status and machine-readable code per domain error, matched along the MRO
ERROR_RESPONSES: Dict[Type[Exception], Tuple[int, str]] = {
    InsufficientStockError: (status.HTTP_409_CONFLICT, 'insufficient_stock'),
    ProductNotFoundError: (status.HTTP_404_NOT_FOUND, 'product_not_found'),
    OrderNotFoundError: (status.HTTP_404_NOT_FOUND, 'order_not_found'),
    OrderValidationError: (status.HTTP_400_BAD_REQUEST, 'invalid_order'),
    InvalidStatusError: (status.HTTP_409_CONFLICT, 'invalid_status'),
    OrderConflictError: (status.HTTP_409_CONFLICT, 'order_conflict'),
    OrderTimeoutError: (status.HTTP_503_SERVICE_UNAVAILABLE, 'order_timeout'),
    OrderError: (status.HTTP_400_BAD_REQUEST, 'order_error'),
    CatalogProductNotFoundError: (status.HTTP_404_NOT_FOUND, 'product_not_found'),
    InvalidProductError: (status.HTTP_400_BAD_REQUEST, 'invalid_product'),
    CatalogError: (status.HTTP_400_BAD_REQUEST, 'catalog_error'),
}

def error_payload(exc: Exception) -> Tuple[int, Dict]:
    """Build the status code and JSON body for a domain error."""
    for cls in type(exc).__mro__:
        if cls in ERROR_RESPONSES:
            status_code, code = ERROR_RESPONSES[cls]
            break
    else:
        return status.HTTP_500_INTERNAL_SERVER_ERROR, {
            'error': 'Internal server error',
            'code': 'internal_error'
        }

    body = {'error': str(exc), 'code': code}
    if hasattr(exc, 'product_id'):
        body['productId'] = exc.product_id
    if isinstance(exc, InsufficientStockError):
        body['productName'] = exc.product_name
        body['available'] = exc.available
        body['requested'] = exc.requested
    return status_code, body

async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code, body = error_payload(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)

async def handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
    details = [
        {
            'field': '.'.join(str(part) for part in error['loc']),
            'message': error['msg']
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'error': 'Invalid request', 'code': 'validation_error', 'details': details}
    )

async def handle_database_error(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'error': 'Internal server error', 'code': 'internal_error'}
    )

async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'error': 'Internal server error', 'code': 'internal_error'}
    )

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the store and cache and wire the services onto app.state."""
    logger.info("Initializing API...")
    pool = await init_db()
    cache = init_cache()

    store = PostgresStore(pool)
    invalidator = CacheInvalidator(cache)

    app.state.store = store
    app.state.cache = cache
    app.state.catalog = CatalogQuery(store, cache)
    app.state.catalog_manager = CatalogManager(store, invalidator)
    app.state.orders = OrderManager(store, invalidator)

    yield

    logger.info("Shutting down API...")
    await cache.close()
    await db_close(pool)

# Create FastAPI app
app = FastAPI(
    title="Storefront API",
    description="REST API for the storefront catalog and orders",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RequestValidationError, handle_validation_error)
app.add_exception_handler(ValidationError, handle_validation_error)
app.add_exception_handler(CatalogError, handle_domain_error)
app.add_exception_handler(OrderError, handle_domain_error)
app.add_exception_handler(DatabaseError, handle_database_error)
app.add_exception_handler(Exception, handle_unexpected_error)

# Import and include all routers
from .products import router as products_router
from .orders import router as orders_router
from .merchant import router as merchant_router
from .system import router as system_router

app.include_router(products_router)
app.include_router(orders_router)
app.include_router(merchant_router)
app.include_router(system_router)
