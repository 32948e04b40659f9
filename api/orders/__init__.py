"""Orders API endpoints."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from orders import OrderManager, OrderNotFoundError, OrderStatus
from ..deps import get_order_manager

# Create router
router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)

class OrderItem(BaseModel):
    """Request model for order items."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias='productId')
    quantity: int

class CreateOrderRequest(BaseModel):
    """Request model for creating an order."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[int] = Field(None, alias='userId')
    items: List[OrderItem] = []
    address_id: Optional[int] = Field(None, alias='addressId')
    payment_method: Optional[str] = Field(None, alias='paymentMethod')

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    order_request: CreateOrderRequest,
    manager: OrderManager = Depends(get_order_manager)
) -> Dict[str, Any]:
    """Create an order, deducting stock for every item in one transaction."""
    order = await manager.create_order(
        user_id=order_request.user_id,
        items=[
            {'product_id': item.product_id, 'quantity': item.quantity}
            for item in order_request.items
        ],
        shipping_address_id=order_request.address_id,
        payment_method=order_request.payment_method
    )
    return {
        'success': True,
        'message': 'Order created',
        'order': order
    }

@router.get("")
async def list_orders(
    user_id: int = Query(..., alias='userId'),
    order_status: Optional[OrderStatus] = Query(None, alias='status'),
    page: int = Query(1),
    limit: int = Query(10),
    manager: OrderManager = Depends(get_order_manager)
) -> Dict[str, Any]:
    """Get a user's orders, newest first."""
    return await manager.list_user_orders(
        user_id,
        status=order_status.value if order_status else None,
        page=page,
        limit=limit
    )

@router.get("/{order_id}")
async def get_order(
    order_id: int,
    manager: OrderManager = Depends(get_order_manager)
) -> Dict[str, Any]:
    """Get order details by ID."""
    order = await manager.get_order(order_id)
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return {'order': order}
