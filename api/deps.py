"""FastAPI dependencies resolving the services created at startup."""

from fastapi import Request

from cache import CacheClient
from catalog import CatalogManager, CatalogQuery
from orders import OrderManager

def get_store(request: Request):
    return request.app.state.store

def get_cache(request: Request) -> CacheClient:
    return request.app.state.cache

def get_catalog(request: Request) -> CatalogQuery:
    return request.app.state.catalog

def get_catalog_manager(request: Request) -> CatalogManager:
    return request.app.state.catalog_manager

def get_order_manager(request: Request) -> OrderManager:
    return request.app.state.orders
