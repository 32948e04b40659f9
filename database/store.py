"""Relational store access for the storefront.

PostgresStore wraps an asyncpg pool and owns every SQL statement the catalog
and order code issue. Order creation goes through transaction(), which yields
a StoreTransaction bound to a single connection inside BEGIN/COMMIT; leaving
the block with an exception (including cancellation) rolls everything back.
"""
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg
from asyncpg.pool import Pool

from .exceptions import DatabaseError, InvalidReferenceError, TransactionConflictError
from .lib.search import build_search_query

logger = logging.getLogger(__name__)

# Columns a merchant may change on an existing product
MUTABLE_PRODUCT_FIELDS = (
    'category_id',
    'name',
    'description',
    'price',
    'original_price',
    'stock',
    'image_url',
    'status'
)

class StoreTransaction:
    """Statements issued inside one order transaction."""

    def __init__(self, conn) -> None:
        self.conn = conn

    async def lock_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        """Read a product row and hold an exclusive row lock until commit/rollback."""
        row = await self.conn.fetchrow(
            '''
            SELECT id, name, price, stock, status
            FROM products
            WHERE id = $1
            FOR UPDATE
            ''',
            product_id
        )
        return dict(row) if row else None

    async def deduct_stock(self, product_id: int, quantity: int) -> None:
        """Take quantity out of stock and add it to the sales count."""
        await self.conn.execute(
            '''
            UPDATE products
            SET stock = stock - $2,
                sales_count = sales_count + $2
            WHERE id = $1
            ''',
            product_id,
            quantity
        )

    async def insert_order(
        self,
        order_no: str,
        user_id: int,
        total_amount: Decimal,
        shipping_address_id: Optional[int] = None,
        payment_method: Optional[str] = None
    ) -> Dict[str, Any]:
        """Insert the order header with status pending."""
        row = await self.conn.fetchrow(
            '''
            INSERT INTO orders (
                order_no,
                user_id,
                total_amount,
                status,
                shipping_address_id,
                payment_method
            ) VALUES ($1, $2, $3, 'pending', $4, $5)
            RETURNING *
            ''',
            order_no,
            user_id,
            total_amount,
            shipping_address_id,
            payment_method
        )
        return dict(row)

    async def insert_order_item(self, order_id: int, line: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one order line carrying the product snapshot."""
        row = await self.conn.fetchrow(
            '''
            INSERT INTO order_items (
                order_id,
                product_id,
                product_name,
                product_price,
                quantity,
                subtotal
            ) VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            ''',
            order_id,
            line['product_id'],
            line['product_name'],
            line['product_price'],
            line['quantity'],
            line['subtotal']
        )
        return dict(row)

class PostgresStore:
    """Product, category and order persistence on top of an asyncpg pool."""

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Open a transaction on a dedicated connection.

        Raises:
            TransactionConflictError: On deadlock or serialization failure
            DatabaseError: On any other store failure
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield StoreTransaction(conn)
        except (asyncpg.exceptions.DeadlockDetectedError, asyncpg.exceptions.SerializationError) as e:
            logger.warning(f"Transaction conflict: {e}")
            raise TransactionConflictError(str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Transaction failed: {e}")
            raise DatabaseError(f"Transaction failed: {e}") from e

    async def ping(self) -> bool:
        """Check the store answers a trivial query."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval('SELECT 1') == 1

    # Catalog reads

    async def search_products(
        self,
        term: str = '',
        category_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Fetch one page of active products and the total number of matches."""
        query, count_query, params, page_params = build_search_query(
            term, category_id, limit, offset
        )
        logger.debug("Executing search query: %s with params: %r", query, params + page_params)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *(params + page_params))
            total = await conn.fetchval(count_query, *params)

        return [dict(row) for row in rows], total

    async def get_active_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        """Get an active product with its category and merchant names."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT p.*, c.name AS category_name, u.name AS merchant_name
                FROM products p
                LEFT JOIN categories c ON p.category_id = c.id
                LEFT JOIN users u ON p.merchant_id = u.id
                WHERE p.id = $1 AND p.status = 'active'
                ''',
                product_id
            )
        return dict(row) if row else None

    async def get_product_reviews(self, product_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        """Get the latest reviews of a product."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT r.id, r.product_id, r.user_id, r.rating, r.content,
                       r.created_at, u.name AS user_name
                FROM product_reviews r
                LEFT JOIN users u ON r.user_id = u.id
                WHERE r.product_id = $1
                ORDER BY r.created_at DESC
                LIMIT $2
                ''',
                product_id,
                limit
            )
        return [dict(row) for row in rows]

    async def get_categories(self) -> List[Dict[str, Any]]:
        """Get all categories in display order."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT id, name, parent_id, description, sort_order
                FROM categories
                ORDER BY sort_order ASC, id ASC
                '''
            )
        return [dict(row) for row in rows]

    # Catalog mutations

    async def get_merchant_products(
        self,
        merchant_id: int,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Get a merchant's products in every status, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT p.*, c.name AS category_name
                FROM products p
                LEFT JOIN categories c ON p.category_id = c.id
                WHERE p.merchant_id = $1
                ORDER BY p.created_at DESC, p.id DESC
                LIMIT $2 OFFSET $3
                ''',
                merchant_id,
                limit,
                offset
            )
            total = await conn.fetchval(
                'SELECT COUNT(*) FROM products WHERE merchant_id = $1',
                merchant_id
            )
        return [dict(row) for row in rows], total

    async def create_product(self, merchant_id: int, fields: Dict[str, Any]) -> int:
        """Insert a product and return its id."""
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    '''
                    INSERT INTO products (
                        merchant_id, category_id, name, description,
                        price, original_price, stock, image_url
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING id
                    ''',
                    merchant_id,
                    fields.get('category_id'),
                    fields['name'],
                    fields.get('description'),
                    fields['price'],
                    fields.get('original_price'),
                    fields.get('stock', 0),
                    fields.get('image_url')
                )
        except asyncpg.exceptions.ForeignKeyViolationError as e:
            raise InvalidReferenceError(str(e)) from e

    async def update_product(
        self,
        product_id: int,
        merchant_id: int,
        changes: Dict[str, Any]
    ) -> bool:
        """Apply changes to a product owned by merchant_id.

        Returns:
            True if the product exists and belongs to the merchant
        """
        columns = [key for key in MUTABLE_PRODUCT_FIELDS if changes.get(key) is not None]
        assignments = ', '.join(f"{column} = ${idx + 3}" for idx, column in enumerate(columns))
        if not assignments:
            assignments = 'updated_at = updated_at'

        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    f'''
                    UPDATE products
                    SET {assignments}
                    WHERE id = $1 AND merchant_id = $2
                    ''',
                    product_id,
                    merchant_id,
                    *[changes[column] for column in columns]
                )
        except asyncpg.exceptions.ForeignKeyViolationError as e:
            raise InvalidReferenceError(str(e)) from e
        return result != 'UPDATE 0'

    async def deactivate_product(self, product_id: int, merchant_id: int) -> bool:
        """Soft delete a product owned by merchant_id."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                '''
                UPDATE products
                SET status = 'inactive'
                WHERE id = $1 AND merchant_id = $2
                ''',
                product_id,
                merchant_id
            )
        return result != 'UPDATE 0'

    # Order reads and status updates

    async def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        """Get an order with its lines."""
        async with self.pool.acquire() as conn:
            order = await conn.fetchrow('SELECT * FROM orders WHERE id = $1', order_id)
            if not order:
                return None
            items = await conn.fetch(
                'SELECT * FROM order_items WHERE order_id = $1 ORDER BY id',
                order_id
            )
        result = dict(order)
        result['items'] = [dict(item) for item in items]
        return result

    async def get_user_orders(
        self,
        user_id: int,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Get a user's orders with their line counts, newest first."""
        where = "WHERE o.user_id = $1"
        params: List[Any] = [user_id]
        if status:
            where += " AND o.status = $2"
            params.append(status)
        param_idx = len(params) + 1

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'''
                SELECT o.*, COUNT(oi.id) AS item_count
                FROM orders o
                LEFT JOIN order_items oi ON o.id = oi.order_id
                {where}
                GROUP BY o.id
                ORDER BY o.created_at DESC, o.id DESC
                LIMIT ${param_idx} OFFSET ${param_idx + 1}
                ''',
                *params,
                limit,
                offset
            )
            total = await conn.fetchval(f'SELECT COUNT(*) FROM orders o {where}', *params)
        return [dict(row) for row in rows], total

    async def get_merchant_orders(
        self,
        merchant_id: int,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Get orders containing at least one of the merchant's products."""
        where = '''
            WHERE EXISTS (
                SELECT 1
                FROM order_items oi
                JOIN products p ON oi.product_id = p.id
                WHERE oi.order_id = o.id AND p.merchant_id = $1
            )
        '''
        params: List[Any] = [merchant_id]
        if status:
            where += " AND o.status = $2"
            params.append(status)
        param_idx = len(params) + 1

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'''
                SELECT o.id, o.order_no, o.user_id, o.total_amount, o.status, o.created_at,
                       u.name AS customer_name,
                       (SELECT COUNT(*) FROM order_items i WHERE i.order_id = o.id) AS item_count
                FROM orders o
                LEFT JOIN users u ON o.user_id = u.id
                {where}
                ORDER BY o.created_at DESC, o.id DESC
                LIMIT ${param_idx} OFFSET ${param_idx + 1}
                ''',
                *params,
                limit,
                offset
            )
            total = await conn.fetchval(f'SELECT COUNT(*) FROM orders o {where}', *params)
        return [dict(row) for row in rows], total

    async def get_order_status(
        self,
        order_id: int,
        merchant_id: Optional[int] = None
    ) -> Optional[str]:
        """Get an order's status, optionally requiring it to hold a merchant's product."""
        async with self.pool.acquire() as conn:
            if merchant_id is None:
                return await conn.fetchval('SELECT status FROM orders WHERE id = $1', order_id)
            return await conn.fetchval(
                '''
                SELECT o.status
                FROM orders o
                WHERE o.id = $1 AND EXISTS (
                    SELECT 1
                    FROM order_items oi
                    JOIN products p ON oi.product_id = p.id
                    WHERE oi.order_id = o.id AND p.merchant_id = $2
                )
                ''',
                order_id,
                merchant_id
            )

    async def set_order_status(self, order_id: int, status: str, expected: str) -> bool:
        """Move an order to status if it is still in the expected status."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                'UPDATE orders SET status = $2 WHERE id = $1 AND status = $3',
                order_id,
                status,
                expected
            )
        return result != 'UPDATE 0'
