"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from records import CouponRecord, OrderLineRecord, OrderRecord, ProductRecord


class CamelModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(CamelModel):
    """Schema for every error response."""
    status: str = "error"
    message: str


# Products

class ProductResponse(CamelModel):
    """Schema for product response."""
    id: int
    seller_id: Optional[int] = None
    title: str
    price: float
    stock: int
    category: Optional[str] = None

    @classmethod
    def from_record(cls, product: ProductRecord) -> "ProductResponse":
        return cls(
            id=product.id,
            seller_id=product.seller_id,
            title=product.title,
            price=product.price,
            stock=product.stock,
            category=product.category,
        )


class ProductListData(CamelModel):
    products: List[ProductResponse]


class ProductListResponse(CamelModel):
    status: str = "success"
    data: ProductListData


class ProductData(CamelModel):
    product: ProductResponse


class ProductDetailResponse(CamelModel):
    status: str = "success"
    data: ProductData


# Cart

class AddCartItemRequest(CamelModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(CamelModel):
    """Schema for changing the quantity of a cart line."""
    quantity: int = Field(..., ge=1)


class CartItemResponse(CamelModel):
    """Schema for cart item in response."""
    product_id: int
    title: Optional[str] = None
    price: float
    quantity: int
    subtotal: float


class CartView(CamelModel):
    user_id: int
    items: List[CartItemResponse]
    total: float


class CartData(CamelModel):
    cart: CartView


class CartResponse(CamelModel):
    """Schema for cart response."""
    status: str = "success"
    message: Optional[str] = None
    data: CartData


# Orders

class CreateOrderRequest(CamelModel):
    """Schema for checkout request."""
    coupon_code: Optional[str] = Field(None, max_length=64)


class UpdateOrderStatusRequest(CamelModel):
    status: str


class OrderSummary(CamelModel):
    """Totals of a freshly placed order."""
    order_id: int
    user_id: int
    subtotal: float
    discount: float
    total: float


class OrderLineResponse(CamelModel):
    product_id: int
    seller_id: Optional[int] = None
    title: str
    quantity: int
    unit_price: float

    @classmethod
    def from_record(cls, line: OrderLineRecord) -> "OrderLineResponse":
        return cls(
            product_id=line.product_id,
            seller_id=line.seller_id,
            title=line.title,
            quantity=line.quantity,
            unit_price=line.unit_price,
        )


class OrderResponse(CamelModel):
    """Schema for order response."""
    order_id: int
    user_id: int
    coupon_id: Optional[int] = None
    subtotal: float
    discount: float
    total: float
    status: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, order: OrderRecord) -> "OrderResponse":
        return cls(
            order_id=order.id,
            user_id=order.user_id,
            coupon_id=order.coupon_id,
            subtotal=order.subtotal,
            discount=order.discount,
            total=order.total,
            status=order.status.value,
            created_at=order.created_at,
        )


class OrderDetail(OrderResponse):
    items: List[OrderLineResponse] = []


class OrderCreatedData(CamelModel):
    order: OrderSummary


class OrderCreatedResponse(CamelModel):
    status: str = "success"
    message: str
    data: OrderCreatedData


class OrdersListData(CamelModel):
    orders: List[OrderResponse]


class OrdersListResponse(CamelModel):
    """Schema for orders list response."""
    status: str = "success"
    data: OrdersListData


class OrderDetailData(CamelModel):
    order: OrderDetail


class OrderDetailResponse(CamelModel):
    status: str = "success"
    data: OrderDetailData


class OrderData(CamelModel):
    order: OrderResponse


class OrderUpdatedResponse(CamelModel):
    status: str = "success"
    message: str
    data: OrderData


# Coupons

class CreateCouponRequest(CamelModel):
    """Schema for creating a coupon."""
    code: str = Field(..., min_length=1, max_length=64)
    type: str
    value: Decimal = Field(..., gt=0)
    min_amount: Decimal = Field(Decimal("0"), ge=0)
    max_discount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    expires_at: Optional[datetime] = None


class CouponResponse(CamelModel):
    id: int
    code: str
    seller_id: Optional[int] = None
    type: str
    value: float
    min_amount: float
    max_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    is_active: bool
    expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, coupon: CouponRecord) -> "CouponResponse":
        return cls(
            id=coupon.id,
            code=coupon.code,
            seller_id=coupon.seller_id,
            type=coupon.type.value,
            value=coupon.value,
            min_amount=coupon.min_amount,
            max_discount=coupon.max_discount,
            usage_limit=coupon.usage_limit,
            is_active=coupon.is_active,
            expires_at=coupon.expires_at,
        )


class CouponData(CamelModel):
    coupon: CouponResponse


class CouponCreatedResponse(CamelModel):
    status: str = "success"
    message: str
    data: CouponData


class CouponListData(CamelModel):
    coupons: List[CouponResponse]


class CouponListResponse(CamelModel):
    status: str = "success"
    data: CouponListData


class CouponDetailResponse(CamelModel):
    status: str = "success"
    data: CouponData
