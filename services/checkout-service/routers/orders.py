"""Orders API router."""
from typing import Optional

from fastapi import APIRouter, Depends, Path

from auth import Principal, get_current_principal
from dependencies import get_checkout_service, get_order_service
from schemas import (
    CreateOrderRequest,
    OrderCreatedResponse,
    OrderDetail,
    OrderDetailResponse,
    OrderLineResponse,
    OrderResponse,
    OrdersListResponse,
    OrderSummary,
    OrderUpdatedResponse,
    UpdateOrderStatusRequest,
)
from services.checkout_service import CheckoutService
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderCreatedResponse, status_code=201)
async def create_order(
    request: Optional[CreateOrderRequest] = None,
    principal: Principal = Depends(get_current_principal),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Place an order for the caller's cart - requires authentication."""
    coupon_code = request.coupon_code if request else None
    order = await checkout_service.checkout(principal.user_id, coupon_code)

    return OrderCreatedResponse(
        message="Order created successfully",
        data={"order": OrderSummary(
            order_id=order.id,
            user_id=order.user_id,
            subtotal=order.subtotal,
            discount=order.discount,
            total=order.total,
        )},
    )


@router.get("", response_model=OrdersListResponse)
async def get_orders(
    principal: Principal = Depends(get_current_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Get caller's orders, newest first - requires authentication."""
    orders = await order_service.list_orders(principal.user_id)

    return OrdersListResponse(data={"orders": [OrderResponse.from_record(order) for order in orders]})


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int = Path(..., description="Order ID"),
    principal: Principal = Depends(get_current_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one order with its items - owner or administrator."""
    order, lines = await order_service.get_order(order_id, principal)

    detail = OrderDetail(
        **OrderResponse.from_record(order).model_dump(),
        items=[OrderLineResponse.from_record(line) for line in lines],
    )
    return OrderDetailResponse(data={"order": detail})


@router.put("/{order_id}", response_model=OrderUpdatedResponse)
async def update_order_status(
    request: UpdateOrderStatusRequest,
    order_id: int = Path(..., description="Order ID"),
    principal: Principal = Depends(get_current_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Update order status - administrators only."""
    order = await order_service.update_status(order_id, request.status, principal)

    return OrderUpdatedResponse(
        message="Order status updated",
        data={"order": OrderResponse.from_record(order)},
    )


@router.delete("/{order_id}", response_model=OrderUpdatedResponse)
async def cancel_order(
    order_id: int = Path(..., description="Order ID"),
    principal: Principal = Depends(get_current_principal),
    order_service: OrderService = Depends(get_order_service)
):
    """Cancel a pending order - owner or administrator."""
    order = await order_service.cancel(order_id, principal)

    return OrderUpdatedResponse(
        message="Order cancelled successfully",
        data={"order": OrderResponse.from_record(order)},
    )
