"""Immutable value records returned by the repositories."""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

import models


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def normalize_coupon_code(code: Optional[str]) -> Optional[str]:
    """Coupon codes are stored and matched upper case; blank means no coupon."""
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


@dataclass(frozen=True)
class ProductRecord:
    id: int
    seller_id: Optional[int]
    title: str
    price: Decimal
    stock: int
    category: Optional[str]
    deleted_at: Optional[datetime]

    @property
    def is_available(self) -> bool:
        return self.deleted_at is None

    @classmethod
    def from_model(cls, row: models.Product) -> "ProductRecord":
        return cls(
            id=row.id,
            seller_id=row.seller_id,
            title=row.title,
            price=Decimal(row.price),
            stock=row.stock,
            category=row.category,
            deleted_at=as_utc(row.deleted_at),
        )


@dataclass(frozen=True)
class CartRecord:
    id: int
    user_id: int


@dataclass(frozen=True)
class CartLineRecord:
    id: int
    cart_id: int
    product_id: int
    quantity: int
    price: Decimal

    @classmethod
    def from_model(cls, row: models.CartItem) -> "CartLineRecord":
        return cls(
            id=row.id,
            cart_id=row.cart_id,
            product_id=row.product_id,
            quantity=row.quantity,
            price=Decimal(row.price),
        )


@dataclass(frozen=True)
class CouponRecord:
    id: int
    code: str
    seller_id: Optional[int]
    type: CouponType
    value: Decimal
    min_amount: Decimal
    max_discount: Optional[Decimal]
    usage_limit: Optional[int]
    is_active: bool
    expires_at: Optional[datetime]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    @classmethod
    def from_model(cls, row: models.Coupon) -> "CouponRecord":
        return cls(
            id=row.id,
            code=row.code,
            seller_id=row.seller_id,
            type=CouponType(row.type),
            value=Decimal(row.value),
            min_amount=Decimal(row.min_amount or 0),
            max_discount=Decimal(row.max_discount) if row.max_discount is not None else None,
            usage_limit=row.usage_limit,
            is_active=bool(row.is_active),
            expires_at=as_utc(row.expires_at),
        )


@dataclass(frozen=True)
class OrderRecord:
    id: int
    user_id: int
    coupon_id: Optional[int]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    status: OrderStatus
    created_at: datetime

    @classmethod
    def from_model(cls, row: models.Order) -> "OrderRecord":
        return cls(
            id=row.id,
            user_id=row.user_id,
            coupon_id=row.coupon_id,
            subtotal=Decimal(row.subtotal),
            discount=Decimal(row.discount),
            total=Decimal(row.total),
            status=OrderStatus(row.status),
            created_at=as_utc(row.created_at),
        )


@dataclass(frozen=True)
class OrderLineRecord:
    id: int
    order_id: int
    product_id: int
    seller_id: Optional[int]
    title: str
    quantity: int
    unit_price: Decimal

    @classmethod
    def from_model(cls, row: models.OrderItem) -> "OrderLineRecord":
        return cls(
            id=row.id,
            order_id=row.order_id,
            product_id=row.product_id,
            seller_id=row.seller_id,
            title=row.title,
            quantity=row.quantity,
            unit_price=Decimal(row.unit_price),
        )


@dataclass(frozen=True)
class NewOrderLine:
    """Order line to be written by the checkout coordinator."""
    product_id: int
    seller_id: Optional[int]
    title: str
    quantity: int
    unit_price: Decimal
