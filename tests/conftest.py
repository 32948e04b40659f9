"""Shared fixtures: an in-memory store and a fake Redis.

MemoryStore implements the PostgresStore interface with per-product asyncio
locks standing in for row locks and an undo log standing in for rollback, so
ordering, locking and atomicity can be exercised without a database server.
"""

import asyncio
import fnmatch
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from cache import CacheClient, CacheInvalidator
from catalog import CatalogManager, CatalogQuery
from database.exceptions import DatabaseError, InvalidReferenceError, TransactionConflictError
from database.store import MUTABLE_PRODUCT_FIELDS
from orders import OrderManager

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

CUSTOMER_ID = 1
MERCHANT_ID = 2
OTHER_MERCHANT_ID = 3

USERS = {
    CUSTOMER_ID: {'id': CUSTOMER_ID, 'name': 'Alice', 'role': 'customer'},
    MERCHANT_ID: {'id': MERCHANT_ID, 'name': 'Acme Store', 'role': 'merchant'},
    OTHER_MERCHANT_ID: {'id': OTHER_MERCHANT_ID, 'name': 'Other Shop', 'role': 'merchant'},
}

CATEGORIES = [
    {'id': 1, 'name': 'Electronics', 'parent_id': None, 'description': None, 'sort_order': 1},
    {'id': 2, 'name': 'Books', 'parent_id': None, 'description': None, 'sort_order': 2},
]

# id, merchant, category, name, description, price, stock, sales_count, status
PRODUCTS = [
    (1, MERCHANT_ID, 1, 'Wireless Mouse', 'Ergonomic 2.4GHz mouse', '19.99', 10, 50, 'active'),
    (2, MERCHANT_ID, 1, 'Mechanical Keyboard', 'Tactile switches', '89.50', 2, 30, 'active'),
    (3, OTHER_MERCHANT_ID, 2, 'Python Cookbook', 'Recipes for mastering Python', '45.00', 5, 80, 'active'),
    (4, MERCHANT_ID, 1, 'Retired Gadget', 'No longer sold', '9.99', 100, 5, 'inactive'),
    (5, MERCHANT_ID, 1, 'USB-C Cable', '100% copper, 1m', '5.50', 1, 10, 'active'),
]

class MemoryTransaction:
    """StoreTransaction counterpart backed by MemoryStore."""

    def __init__(self, store: 'MemoryStore') -> None:
        self.store = store
        self.held: List[int] = []
        self.undo: List[Any] = []

    async def lock_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        self.store.lock_log.append(product_id)
        if self.store.conflicts > 0:
            self.store.conflicts -= 1
            raise TransactionConflictError("deadlock detected")

        if product_id not in self.store.products:
            return None

        if product_id not in self.held:
            await self.store.locks[product_id].acquire()
            self.held.append(product_id)
        # Let competing transactions queue up on the lock
        await asyncio.sleep(self.store.lock_delay)

        product = self.store.products[product_id]
        return {key: product[key] for key in ('id', 'name', 'price', 'stock', 'status')}

    async def deduct_stock(self, product_id: int, quantity: int) -> None:
        product = self.store.products[product_id]
        if product['stock'] - quantity < 0:
            raise DatabaseError('new row for relation "products" violates check constraint')
        product['stock'] -= quantity
        product['sales_count'] += quantity

        def restore():
            product['stock'] += quantity
            product['sales_count'] -= quantity
        self.undo.append(restore)

    async def insert_order(
        self,
        order_no: str,
        user_id: int,
        total_amount: Decimal,
        shipping_address_id: Optional[int] = None,
        payment_method: Optional[str] = None
    ) -> Dict[str, Any]:
        order_id = self.store.next_id('orders')
        now = self.store.now()
        row = {
            'id': order_id,
            'order_no': order_no,
            'user_id': user_id,
            'total_amount': total_amount,
            'status': 'pending',
            'shipping_address_id': shipping_address_id,
            'payment_method': payment_method,
            'created_at': now,
            'updated_at': now,
        }
        self.store.orders[order_id] = row
        self.undo.append(lambda: self.store.orders.pop(order_id))
        return dict(row)

    async def insert_order_item(self, order_id: int, line: Dict[str, Any]) -> Dict[str, Any]:
        item_id = self.store.next_id('order_items')
        row = {'id': item_id, 'order_id': order_id, **line, 'created_at': self.store.now()}
        self.store.order_items[item_id] = row
        self.undo.append(lambda: self.store.order_items.pop(item_id))
        return dict(row)

    def rollback(self) -> None:
        for restore in reversed(self.undo):
            restore()
        self.undo = []

    def release(self) -> None:
        for product_id in self.held:
            self.store.locks[product_id].release()
        self.held = []

class MemoryStore:
    """In-memory implementation of the PostgresStore interface."""

    def __init__(self) -> None:
        self._clock = 0
        self._ids: Counter = Counter()
        self.users = {user_id: dict(user) for user_id, user in USERS.items()}
        self.categories = [dict(category) for category in CATEGORIES]
        self.products: Dict[int, Dict[str, Any]] = {}
        self.reviews: List[Dict[str, Any]] = []
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.order_items: Dict[int, Dict[str, Any]] = {}

        self.locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.lock_log: List[int] = []
        self.lock_delay = 0
        self.conflicts = 0
        self.available = True
        self.calls: Counter = Counter()

        for product_id, merchant_id, category_id, name, description, price, stock, sales, status in PRODUCTS:
            now = self.now()
            self.products[product_id] = {
                'id': product_id,
                'merchant_id': merchant_id,
                'category_id': category_id,
                'name': name,
                'description': description,
                'price': Decimal(price),
                'original_price': None,
                'stock': stock,
                'sales_count': sales,
                'image_url': None,
                'status': status,
                'created_at': now,
                'updated_at': now,
            }
            self._ids['products'] = product_id

        for rating, content in ((5, 'Great mouse'), (3, 'Battery drains fast')):
            self.reviews.append({
                'id': self.next_id('product_reviews'),
                'product_id': 1,
                'user_id': CUSTOMER_ID,
                'rating': rating,
                'content': content,
                'created_at': self.now(),
            })

    def now(self) -> datetime:
        self._clock += 1
        return EPOCH + timedelta(seconds=self._clock)

    def next_id(self, table: str) -> int:
        self._ids[table] += 1
        return self._ids[table]

    def _category_name(self, category_id: Optional[int]) -> Optional[str]:
        for category in self.categories:
            if category['id'] == category_id:
                return category['name']
        return None

    def _check_available(self) -> None:
        if not self.available:
            raise DatabaseError("connection refused")

    @asynccontextmanager
    async def transaction(self):
        self._check_available()
        tx = MemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        finally:
            tx.release()

    async def ping(self) -> bool:
        self._check_available()
        return True

    async def search_products(
        self,
        term: str = '',
        category_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0
    ):
        self._check_available()
        self.calls['search_products'] += 1
        needle = term.lower()
        matches = [
            product for product in self.products.values()
            if product['status'] == 'active'
            and (
                not needle
                or needle in product['name'].lower()
                or needle in (product['description'] or '').lower()
            )
            and (category_id is None or product['category_id'] == category_id)
        ]
        matches.sort(key=lambda p: (p['sales_count'], p['created_at'], p['id']), reverse=True)
        rows = [
            {
                key: product[key] for key in (
                    'id', 'name', 'description', 'price', 'original_price', 'stock',
                    'image_url', 'sales_count', 'category_id', 'created_at'
                )
            }
            for product in matches[offset:offset + limit]
        ]
        for row in rows:
            row['category_name'] = self._category_name(row['category_id'])
        return rows, len(matches)

    async def get_active_product(self, product_id: int):
        self._check_available()
        self.calls['get_active_product'] += 1
        product = self.products.get(product_id)
        if not product or product['status'] != 'active':
            return None
        return {
            **product,
            'category_name': self._category_name(product['category_id']),
            'merchant_name': self.users[product['merchant_id']]['name'],
        }

    async def get_product_reviews(self, product_id: int, limit: int = 10):
        reviews = [dict(r) for r in self.reviews if r['product_id'] == product_id]
        reviews.sort(key=lambda r: r['created_at'], reverse=True)
        return reviews[:limit]

    async def get_categories(self):
        self._check_available()
        self.calls['get_categories'] += 1
        return [dict(c) for c in sorted(self.categories, key=lambda c: (c['sort_order'], c['id']))]

    async def get_merchant_products(self, merchant_id: int, limit: int = 20, offset: int = 0):
        owned = [dict(p) for p in self.products.values() if p['merchant_id'] == merchant_id]
        owned.sort(key=lambda p: (p['created_at'], p['id']), reverse=True)
        return owned[offset:offset + limit], len(owned)

    def _check_references(self, merchant_id: int, fields: Dict[str, Any]) -> None:
        if merchant_id not in self.users:
            raise InvalidReferenceError(f"user {merchant_id} does not exist")
        category_id = fields.get('category_id')
        if category_id is not None and self._category_name(category_id) is None:
            raise InvalidReferenceError(f"category {category_id} does not exist")

    async def create_product(self, merchant_id: int, fields: Dict[str, Any]) -> int:
        self._check_references(merchant_id, fields)
        product_id = self.next_id('products')
        now = self.now()
        self.products[product_id] = {
            'id': product_id,
            'merchant_id': merchant_id,
            'category_id': fields.get('category_id'),
            'name': fields['name'],
            'description': fields.get('description'),
            'price': fields['price'],
            'original_price': fields.get('original_price'),
            'stock': fields.get('stock', 0),
            'sales_count': 0,
            'image_url': fields.get('image_url'),
            'status': 'active',
            'created_at': now,
            'updated_at': now,
        }
        return product_id

    async def update_product(self, product_id: int, merchant_id: int, changes: Dict[str, Any]) -> bool:
        product = self.products.get(product_id)
        if not product or product['merchant_id'] != merchant_id:
            return False
        self._check_references(merchant_id, changes)
        for key in MUTABLE_PRODUCT_FIELDS:
            if changes.get(key) is not None:
                product[key] = changes[key]
        product['updated_at'] = self.now()
        return True

    async def deactivate_product(self, product_id: int, merchant_id: int) -> bool:
        product = self.products.get(product_id)
        if not product or product['merchant_id'] != merchant_id:
            return False
        product['status'] = 'inactive'
        return True

    def _items(self, order_id: int) -> List[Dict[str, Any]]:
        return [dict(i) for i in self.order_items.values() if i['order_id'] == order_id]

    async def get_order(self, order_id: int):
        order = self.orders.get(order_id)
        if not order:
            return None
        return {**order, 'items': self._items(order_id)}

    def _page(self, orders, limit: int, offset: int):
        orders = sorted(orders, key=lambda o: (o['created_at'], o['id']), reverse=True)
        rows = [{**o, 'item_count': len(self._items(o['id']))} for o in orders[offset:offset + limit]]
        return rows, len(orders)

    async def get_user_orders(self, user_id: int, status: Optional[str] = None, limit: int = 10, offset: int = 0):
        orders = [
            o for o in self.orders.values()
            if o['user_id'] == user_id and (not status or o['status'] == status)
        ]
        return self._page(orders, limit, offset)

    def _has_merchant_item(self, order_id: int, merchant_id: int) -> bool:
        return any(
            self.products[item['product_id']]['merchant_id'] == merchant_id
            for item in self._items(order_id)
        )

    async def get_merchant_orders(self, merchant_id: int, status: Optional[str] = None, limit: int = 20, offset: int = 0):
        orders = [
            o for o in self.orders.values()
            if self._has_merchant_item(o['id'], merchant_id) and (not status or o['status'] == status)
        ]
        return self._page(orders, limit, offset)

    async def get_order_status(self, order_id: int, merchant_id: Optional[int] = None):
        order = self.orders.get(order_id)
        if not order:
            return None
        if merchant_id is not None and not self._has_merchant_item(order_id, merchant_id):
            return None
        return order['status']

    async def set_order_status(self, order_id: int, status: str, expected: str) -> bool:
        order = self.orders.get(order_id)
        if not order or order['status'] != expected:
            return False
        order['status'] = status
        return True

class FakeRedis:
    """Subset of redis.asyncio.Redis used by CacheClient, with TTL bookkeeping."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass

    def keys_with_prefix(self, prefix: str) -> List[str]:
        return [key for key in self.data if key.startswith(prefix)]

@pytest.fixture
def store():
    """Create a seeded in-memory store."""
    return MemoryStore()

@pytest.fixture
def redis():
    """Create an empty fake Redis."""
    return FakeRedis()

@pytest.fixture
def cache(redis):
    return CacheClient(redis)

@pytest.fixture
def invalidator(cache):
    return CacheInvalidator(cache)

@pytest.fixture
def catalog(store, cache):
    """Create a CatalogQuery with the default TTLs."""
    return CatalogQuery(
        store,
        cache,
        list_ttl=3600,
        detail_ttl=1800,
        category_ttl=86400,
        max_page_size=100
    )

@pytest.fixture
def catalog_manager(store, invalidator):
    return CatalogManager(store, invalidator, max_page_size=100)

@pytest.fixture
def order_manager(store, invalidator):
    """Create an OrderManager with a short deadline."""
    return OrderManager(
        store,
        invalidator,
        timeout=2,
        retry_attempts=3,
        lock_order='submitted',
        max_page_size=100
    )

@pytest_asyncio.fixture
async def client(store, cache, catalog, catalog_manager, order_manager):
    """Create an HTTP client bound to the API with in-memory services."""
    from api import app

    app.state.store = store
    app.state.cache = cache
    app.state.catalog = catalog
    app.state.catalog_manager = catalog_manager
    app.state.orders = order_manager

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
