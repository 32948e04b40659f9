"""Merchant catalog management.

Product writes go straight to the store; afterwards the affected detail entry
and every search listing page are dropped from the cache.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from cache import CacheInvalidator
from database.exceptions import InvalidReferenceError
from database.lib.records import to_json_record
from . import InvalidProductError, ProductNotFoundError, SearchParams

logger = logging.getLogger(__name__)

PRODUCT_STATUSES = ('active', 'inactive')

# Fields a merchant may send when creating or updating a product
PRODUCT_FIELDS = (
    'category_id',
    'name',
    'description',
    'price',
    'original_price',
    'stock',
    'image_url',
    'status'
)

def _to_price(field: str, value: Any) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidProductError(f"{field} must be a number")
    if not price.is_finite() or price <= 0:
        raise InvalidProductError(f"{field} must be greater than 0")
    return price.quantize(Decimal('0.01'))

def validate_product_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Check and normalize product fields; None values are dropped.

    Raises:
        InvalidProductError: If a field has an invalid value
    """
    clean = {key: fields[key] for key in PRODUCT_FIELDS if fields.get(key) is not None}

    if 'name' in clean:
        clean['name'] = str(clean['name']).strip()
        if not clean['name']:
            raise InvalidProductError("name must not be empty")

    for field in ('price', 'original_price'):
        if field in clean:
            clean[field] = _to_price(field, clean[field])

    if 'stock' in clean:
        if isinstance(clean['stock'], bool) or not isinstance(clean['stock'], int) or clean['stock'] < 0:
            raise InvalidProductError("stock must be a non-negative integer")

    if 'status' in clean and clean['status'] not in PRODUCT_STATUSES:
        raise InvalidProductError(
            f"status must be one of {', '.join(PRODUCT_STATUSES)}"
        )

    return clean

class CatalogManager:
    """Manager class for merchant product operations."""

    def __init__(self, store, invalidator: CacheInvalidator, max_page_size: Optional[int] = None):
        """Initialize the catalog manager.

        Args:
            store: Relational store (PostgresStore or compatible)
            invalidator: Cache invalidator notified after every write
            max_page_size: Upper bound for the page size (default from settings)
        """
        from config import settings_conf

        self.store = store
        self.invalidator = invalidator
        self.max_page_size = max_page_size or settings_conf['max_page_size']

    async def list_merchant_products(
        self,
        merchant_id: int,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """List a merchant's products in every status. Not cached."""
        params = SearchParams(page=page, limit=limit).bounded(self.max_page_size)
        rows, total = await self.store.get_merchant_products(
            merchant_id,
            limit=params.limit,
            offset=params.offset
        )
        return {
            'products': [to_json_record(row) for row in rows],
            'pagination': {
                'page': params.page,
                'limit': params.limit,
                'total': total,
                'totalPages': (total + params.limit - 1) // params.limit
            }
        }

    async def create_product(self, merchant_id: int, **fields) -> int:
        """Create an active product.

        Returns:
            The new product id

        Raises:
            InvalidProductError: If required fields are missing or invalid
        """
        clean = validate_product_fields(fields)
        for required in ('name', 'price'):
            if required not in clean:
                raise InvalidProductError(f"{required} is required")
        clean.pop('status', None)

        try:
            product_id = await self.store.create_product(merchant_id, clean)
        except InvalidReferenceError:
            raise InvalidProductError("Unknown merchant or category")

        await self.invalidator.invalidate_search()
        logger.info(f"Merchant {merchant_id} created product {product_id}")
        return product_id

    async def update_product(self, product_id: int, merchant_id: int, **changes) -> None:
        """Update the provided fields of a merchant's product.

        Raises:
            InvalidProductError: If a field is invalid
            ProductNotFoundError: If the product does not exist or belongs to another merchant
        """
        clean = validate_product_fields(changes)

        try:
            updated = await self.store.update_product(product_id, merchant_id, clean)
        except InvalidReferenceError:
            raise InvalidProductError("Unknown category")
        if not updated:
            raise ProductNotFoundError(product_id)

        await self.invalidator.invalidate_products([product_id])
        logger.info(f"Merchant {merchant_id} updated product {product_id}: {sorted(clean)}")

    async def deactivate_product(self, product_id: int, merchant_id: int) -> None:
        """Soft delete a merchant's product; the row stays for order history.

        Raises:
            ProductNotFoundError: If the product does not exist or belongs to another merchant
        """
        if not await self.store.deactivate_product(product_id, merchant_id):
            raise ProductNotFoundError(product_id)

        await self.invalidator.invalidate_products([product_id])
        logger.info(f"Merchant {merchant_id} deactivated product {product_id}")
