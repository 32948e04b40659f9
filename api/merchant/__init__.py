"""Merchant API endpoints for managing products and orders.

Merchants are identified by the merchantId they send; ownership is enforced
by the catalog and order managers, which answer 404 for anything the merchant
does not own.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from catalog import CatalogManager
from orders import OrderManager, OrderStatus
from ..deps import get_catalog_manager, get_order_manager

# Create router
router = APIRouter(
    prefix="/api/merchant",
    tags=["Merchant"]
)

class ProductFields(BaseModel):
    """Product fields shared by create and update requests."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: int = Field(alias='merchantId')
    category_id: Optional[int] = Field(None, alias='categoryId')
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    original_price: Optional[Decimal] = Field(None, alias='originalPrice')
    stock: Optional[int] = None
    image_url: Optional[str] = Field(None, alias='imageUrl')

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude={'merchant_id'}, exclude_none=True)

class CreateProductRequest(ProductFields):
    """Request model for creating a product."""
    pass

class UpdateProductRequest(ProductFields):
    """Request model for updating a product; omitted fields keep their value."""
    status: Optional[str] = None

class UpdateOrderStatusRequest(BaseModel):
    """Request model for moving an order to a new status."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: int = Field(alias='merchantId')
    status: OrderStatus

""" Product management """
@router.get("/products")
async def list_products(
    merchant_id: int = Query(..., alias='merchantId'),
    page: int = Query(1),
    limit: int = Query(20),
    manager: CatalogManager = Depends(get_catalog_manager)
) -> Dict[str, Any]:
    """Get all of a merchant's products, including inactive ones."""
    return await manager.list_merchant_products(merchant_id, page=page, limit=limit)

@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    product_request: CreateProductRequest,
    manager: CatalogManager = Depends(get_catalog_manager)
) -> Dict[str, Any]:
    """Create a new active product."""
    product_id = await manager.create_product(
        product_request.merchant_id,
        **product_request.changes()
    )
    return {
        'success': True,
        'message': 'Product created',
        'productId': product_id
    }

@router.put("/products/{product_id}")
async def update_product(
    product_id: int,
    product_request: UpdateProductRequest,
    manager: CatalogManager = Depends(get_catalog_manager)
) -> Dict[str, Any]:
    """Update the provided fields of a product."""
    await manager.update_product(
        product_id,
        product_request.merchant_id,
        **product_request.changes()
    )
    return {'success': True, 'message': 'Product updated'}

@router.delete("/products/{product_id}")
async def delete_product(
    product_id: int,
    merchant_id: int = Query(..., alias='merchantId'),
    manager: CatalogManager = Depends(get_catalog_manager)
) -> Dict[str, Any]:
    """Deactivate a product. Order history keeps referring to it."""
    await manager.deactivate_product(product_id, merchant_id)
    return {'success': True, 'message': 'Product deleted'}

""" Order management """
@router.get("/orders")
async def list_orders(
    merchant_id: int = Query(..., alias='merchantId'),
    order_status: Optional[OrderStatus] = Query(None, alias='status'),
    page: int = Query(1),
    limit: int = Query(20),
    manager: OrderManager = Depends(get_order_manager)
) -> Dict[str, Any]:
    """Get orders containing the merchant's products."""
    return await manager.list_merchant_orders(
        merchant_id,
        status=order_status.value if order_status else None,
        page=page,
        limit=limit
    )

@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    status_request: UpdateOrderStatusRequest,
    manager: OrderManager = Depends(get_order_manager)
) -> Dict[str, Any]:
    """Move an order to a new status."""
    result = await manager.update_order_status(
        order_id,
        status_request.status.value,
        merchant_id=status_request.merchant_id
    )
    return {'success': True, 'message': 'Order status updated', **result}
