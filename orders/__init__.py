"""Orders module for storefront orders.

This module handles order creation, order lookups and status changes.
Creating an order locks every referenced product row, checks and deducts stock,
and writes the order with its lines in a single store transaction; either all
of it commits or none of it does.
"""
import asyncio
import logging
import random
import string
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import backoff

from cache import CacheInvalidator
from database.exceptions import DatabaseError, TransactionConflictError
from database.lib.records import to_json_record
from database.lib.search import MAX_PAGE

logger = logging.getLogger(__name__)

ORDER_NO_PREFIX = 'ORD'
ORDER_NO_ALPHABET = string.ascii_uppercase + string.digits
ORDER_NO_SUFFIX_LENGTH = 6

class OrderStatus(str, Enum):
    PENDING = 'pending'
    PAID = 'paid'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'

# Allowed status moves; cancelled and refunded are terminal
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

class OrderError(Exception):
    """Base class for order-related errors."""
    pass

class OrderValidationError(OrderError):
    """Raised when an order request is rejected before touching the store."""
    pass

class ProductNotFoundError(OrderError):
    """Raised when an ordered product does not exist or is inactive."""
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")

class InsufficientStockError(OrderError):
    """Raised when a product has less stock than requested."""
    def __init__(self, product_id: int, product_name: str, available: int, requested: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name!r}: "
            f"available {available}, requested {requested}"
        )

    @property
    def shortfall(self) -> int:
        return self.requested - self.available

class OrderNotFoundError(OrderError):
    """Raised when an order does not exist or is not visible to the caller."""
    pass

class InvalidStatusError(OrderError):
    """Raised for unknown statuses and disallowed status transitions."""
    pass

class OrderConflictError(OrderError):
    """Raised when concurrent activity kept the order from committing."""
    pass

class OrderTimeoutError(OrderError):
    """Raised when an order transaction exceeds its deadline and is rolled back."""
    pass

ItemSpec = Union[Mapping[str, Any], Sequence[Any]]

def generate_order_number(now: Optional[float] = None) -> str:
    """Build an order number from epoch milliseconds and a random suffix.

    Not checked against existing orders; a collision fails the insert.
    """
    millis = int((time.time() if now is None else now) * 1000)
    suffix = ''.join(random.choices(ORDER_NO_ALPHABET, k=ORDER_NO_SUFFIX_LENGTH))
    return f"{ORDER_NO_PREFIX}{millis}{suffix}"

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0

def normalize_items(items: Optional[Iterable[ItemSpec]]) -> List[Tuple[int, int]]:
    """Turn the requested items into (product_id, quantity) pairs, keeping their order.

    Raises:
        OrderValidationError: If the list is empty or an item is malformed
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    lines = []
    for index, item in enumerate(items):
        if isinstance(item, Mapping):
            product_id = item.get('product_id')
            quantity = item.get('quantity')
        else:
            try:
                product_id, quantity = item
            except (TypeError, ValueError):
                raise OrderValidationError(f"Item {index} must be a (product_id, quantity) pair")

        if not _is_positive_int(product_id):
            raise OrderValidationError(f"Item {index} has an invalid product id")
        if not _is_positive_int(quantity):
            raise OrderValidationError(f"Item {index} quantity must be a positive integer")
        lines.append((product_id, quantity))

    if not lines:
        raise OrderValidationError("Order must contain at least one item")
    return lines

def parse_status(status: Any) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise InvalidStatusError(f"Invalid order status: {status}")

def _page_window(page: int, limit: int, max_page_size: int) -> Tuple[int, int, int]:
    if page > MAX_PAGE:
        raise OrderValidationError(f"page must not exceed {MAX_PAGE}")
    page = max(1, page)
    limit = min(max(1, limit), max_page_size)
    return page, limit, (page - 1) * limit

def _serialize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    result = to_json_record({k: v for k, v in order.items() if k != 'items'})
    if 'items' in order:
        result['items'] = [to_json_record(item) for item in order['items']]
    return result

class OrderManager:
    """Manages order creation and state transitions."""

    def __init__(
        self,
        store,
        invalidator: CacheInvalidator,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        lock_order: Optional[str] = None,
        max_page_size: Optional[int] = None
    ) -> None:
        """Initialize order manager.

        Args:
            store: Relational store (PostgresStore or compatible)
            invalidator: Cache invalidator run after every committed order
            timeout: Deadline in seconds for the order transaction (default from settings)
            retry_attempts: Tries on deadlock/serialization failure (default from settings)
            lock_order: 'submitted' locks rows in request order, 'product_id' sorts them first
            max_page_size: Upper bound for list page sizes (default from settings)
        """
        from config import settings_conf

        self.store = store
        self.invalidator = invalidator
        self.timeout = timeout or settings_conf['order_timeout']
        self.retry_attempts = retry_attempts or settings_conf['order_retry_attempts']
        self.lock_order = lock_order or settings_conf['lock_order']
        self.max_page_size = max_page_size or settings_conf['max_page_size']

    async def create_order(
        self,
        user_id: Optional[int],
        items: Optional[Iterable[ItemSpec]],
        shipping_address_id: Optional[int] = None,
        payment_method: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Create an order and deduct stock for every item, atomically.

        Args:
            user_id: Ordering user
            items: (product_id, quantity) pairs or dicts with product_id and quantity
            shipping_address_id: Optional opaque address reference
            payment_method: Optional payment method label
            timeout: Optional deadline in seconds overriding the configured one

        Returns:
            Dict containing id, orderNo, totalAmount, status, createdAt and items

        Raises:
            OrderValidationError: If the request is malformed (nothing is opened)
            ProductNotFoundError: If a product does not exist (rolled back)
            InsufficientStockError: If a product lacks stock (rolled back)
            OrderConflictError: If deadlock retries are exhausted (rolled back)
            OrderTimeoutError: If the deadline passes (rolled back)
            DatabaseError: If the store fails (rolled back)
        """
        if not _is_positive_int(user_id):
            raise OrderValidationError("A valid user id is required")
        lines = normalize_items(items)

        deadline = timeout or self.timeout
        try:
            order = await asyncio.wait_for(
                self._commit_with_retry(user_id, lines, shipping_address_id, payment_method),
                timeout=deadline
            )
        except asyncio.TimeoutError:
            logger.error(f"Order for user {user_id} exceeded {deadline}s and was rolled back")
            raise OrderTimeoutError(f"Order could not be completed within {deadline} seconds")
        except TransactionConflictError as e:
            logger.error(f"Order for user {user_id} failed after {self.retry_attempts} attempts: {e}")
            raise OrderConflictError("Order conflicted with concurrent orders, please retry")
        except DatabaseError as e:
            logger.error(f"Database error creating order for user {user_id}: {e}")
            raise

        await self.invalidator.invalidate_products(product_id for product_id, _ in lines)
        logger.info(f"Order {order['order_no']} created, total {order['total_amount']}")

        return {
            'id': order['id'],
            'orderNo': order['order_no'],
            'totalAmount': str(order['total_amount']),
            'status': order['status'],
            'createdAt': to_json_record(order)['created_at'],
            'items': [to_json_record(item) for item in order['items']]
        }

    async def _commit_with_retry(self, *args) -> Dict[str, Any]:
        commit = backoff.on_exception(
            backoff.expo,
            TransactionConflictError,
            max_tries=self.retry_attempts,
            factor=0.05
        )(self._commit)
        return await commit(*args)

    async def _commit(
        self,
        user_id: int,
        lines: List[Tuple[int, int]],
        shipping_address_id: Optional[int],
        payment_method: Optional[str]
    ) -> Dict[str, Any]:
        """Run one attempt of the order transaction."""
        async with self.store.transaction() as tx:
            locked: Dict[int, Dict[str, Any]] = {}

            if self.lock_order == 'product_id':
                for product_id in sorted({product_id for product_id, _ in lines}):
                    locked[product_id] = await self._lock_product(tx, product_id)

            total_amount = Decimal('0')
            order_lines = []

            for product_id, quantity in lines:
                product = locked.get(product_id)
                if product is None:
                    product = locked[product_id] = await self._lock_product(tx, product_id)

                if product['stock'] < quantity:
                    raise InsufficientStockError(
                        product_id, product['name'], product['stock'], quantity
                    )

                await tx.deduct_stock(product_id, quantity)
                product['stock'] -= quantity

                price = Decimal(product['price'])
                subtotal = price * quantity
                total_amount += subtotal

                order_lines.append({
                    'product_id': product_id,
                    'product_name': product['name'],
                    'product_price': price,
                    'quantity': quantity,
                    'subtotal': subtotal
                })

            order = await tx.insert_order(
                generate_order_number(),
                user_id,
                total_amount,
                shipping_address_id,
                payment_method
            )
            order['items'] = [
                await tx.insert_order_item(order['id'], line) for line in order_lines
            ]
            return order

    async def _lock_product(self, tx, product_id: int) -> Dict[str, Any]:
        product = await tx.lock_product(product_id)
        if not product or product['status'] != 'active':
            raise ProductNotFoundError(product_id)
        return product

    async def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        """Get order details by ID.

        Returns:
            Dict containing order details and items, or None if not found
        """
        order = await self.store.get_order(order_id)
        return _serialize_order(order) if order else None

    async def list_user_orders(
        self,
        user_id: int,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Dict[str, Any]:
        """List a user's orders, newest first."""
        if status:
            status = parse_status(status).value
        page, limit, offset = _page_window(page, limit, self.max_page_size)

        rows, total = await self.store.get_user_orders(user_id, status, limit, offset)
        return {
            'orders': [_serialize_order(row) for row in rows],
            'pagination': {'page': page, 'limit': limit, 'total': total}
        }

    async def list_merchant_orders(
        self,
        merchant_id: int,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """List orders containing at least one of the merchant's products."""
        if status:
            status = parse_status(status).value
        page, limit, offset = _page_window(page, limit, self.max_page_size)

        rows, total = await self.store.get_merchant_orders(merchant_id, status, limit, offset)
        return {
            'orders': [_serialize_order(row) for row in rows],
            'pagination': {'page': page, 'limit': limit, 'total': total}
        }

    async def update_order_status(
        self,
        order_id: int,
        status: str,
        merchant_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Move an order along its status progression.

        Args:
            order_id: Order to update
            status: Target status
            merchant_id: When given, the order must contain one of this merchant's products

        Raises:
            InvalidStatusError: If the status is unknown or the transition is not allowed
            OrderNotFoundError: If the order does not exist or is not visible to the merchant
            OrderConflictError: If the status changed concurrently
        """
        target = parse_status(status)

        current = await self.store.get_order_status(order_id, merchant_id)
        if current is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        current = OrderStatus(current)

        if target not in ORDER_TRANSITIONS[current]:
            raise InvalidStatusError(
                f"Cannot change order {order_id} from {current.value} to {target.value}"
            )

        if not await self.store.set_order_status(order_id, target.value, current.value):
            raise OrderConflictError(f"Order {order_id} status changed concurrently")

        logger.info(f"Order {order_id} moved from {current.value} to {target.value}")
        return {'id': order_id, 'status': target.value}

__all__ = [
    'OrderManager',
    'OrderStatus',
    'ORDER_TRANSITIONS',
    'generate_order_number',
    'normalize_items',
    'OrderError',
    'OrderValidationError',
    'ProductNotFoundError',
    'InsufficientStockError',
    'OrderNotFoundError',
    'InvalidStatusError',
    'OrderConflictError',
    'OrderTimeoutError',
]
