"""Data-access contracts used by the checkout and order lifecycle services.

Repositories hold no session of their own. Every method takes the
transaction handle (`tx`) explicitly so the atomicity boundary is visible at
the call site, and returns immutable records instead of live ORM rows.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from models import Cart, CartItem, Coupon, CouponUsage, Order, OrderItem, Product
from records import (
    CartLineRecord,
    CartRecord,
    CouponRecord,
    NewOrderLine,
    OrderLineRecord,
    OrderRecord,
    OrderStatus,
    ProductRecord,
)


class ProductRepository:
    """Inventory store: product reads and conditional stock mutations."""

    def get_product(self, tx: Session, product_id: int) -> Optional[ProductRecord]:
        row = tx.get(Product, product_id)
        return ProductRecord.from_model(row) if row else None

    def list_products(self, tx: Session) -> List[ProductRecord]:
        rows = tx.execute(
            select(Product).where(Product.deleted_at.is_(None)).order_by(Product.id)
        ).scalars().all()
        return [ProductRecord.from_model(row) for row in rows]

    def decrement_stock(self, tx: Session, product_id: int, quantity: int) -> bool:
        """
        Take `quantity` units out of stock.

        The write carries its own predicate, so it never drives stock below
        zero whatever was read earlier in the transaction. Returns False when
        no row matched (stock already taken or product deleted).
        """
        result = tx.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.deleted_at.is_(None),
                Product.stock >= quantity,
            )
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment_stock(self, tx: Session, product_id: int, quantity: int) -> bool:
        result = tx.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CartRepository:
    def get_cart(self, tx: Session, user_id: int) -> Optional[CartRecord]:
        row = tx.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()
        return CartRecord(id=row.id, user_id=row.user_id) if row else None

    def create_cart(self, tx: Session, user_id: int) -> CartRecord:
        row = Cart(user_id=user_id)
        tx.add(row)
        tx.flush()
        return CartRecord(id=row.id, user_id=row.user_id)

    def list_line_items(self, tx: Session, cart_id: int) -> List[CartLineRecord]:
        rows = tx.execute(
            select(CartItem).where(CartItem.cart_id == cart_id).order_by(CartItem.id)
        ).scalars().all()
        return [CartLineRecord.from_model(row) for row in rows]

    def get_line_item(self, tx: Session, cart_id: int, product_id: int) -> Optional[CartLineRecord]:
        row = tx.execute(
            select(CartItem).where(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
        ).scalar_one_or_none()
        return CartLineRecord.from_model(row) if row else None

    def save_line_item(self, tx: Session, cart_id: int, product_id: int, quantity: int, price: Decimal) -> CartLineRecord:
        """Insert the line, or replace quantity and price snapshot of an existing one."""
        row = tx.execute(
            select(CartItem).where(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
        ).scalar_one_or_none()
        if row is None:
            row = CartItem(cart_id=cart_id, product_id=product_id, quantity=quantity, price=price)
            tx.add(row)
        else:
            row.quantity = quantity
            row.price = price
        tx.flush()
        return CartLineRecord.from_model(row)

    def delete_line_item(self, tx: Session, cart_id: int, product_id: int) -> int:
        result = tx.execute(
            delete(CartItem).where(CartItem.cart_id == cart_id, CartItem.product_id == product_id)
        )
        return result.rowcount

    def delete_line_items(self, tx: Session, cart_id: int) -> int:
        result = tx.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
        return result.rowcount


class CouponRepository:
    """Coupon ledger: definitions plus one usage row per redemption."""

    def find_active_coupon(self, tx: Session, code: str, lock: bool = False) -> Optional[CouponRecord]:
        """
        Look up an active coupon by code.

        With `lock=True` the row is read FOR UPDATE, serialising concurrent
        redemptions of the same coupon until the transaction ends.
        """
        query = select(Coupon).where(Coupon.code == code, Coupon.is_active.is_(True))
        if lock:
            query = query.with_for_update()
        row = tx.execute(query).scalar_one_or_none()
        return CouponRecord.from_model(row) if row else None

    def get_coupon(self, tx: Session, coupon_id: int) -> Optional[CouponRecord]:
        row = tx.get(Coupon, coupon_id)
        return CouponRecord.from_model(row) if row else None

    def get_coupon_by_code(self, tx: Session, code: str) -> Optional[CouponRecord]:
        row = tx.execute(select(Coupon).where(Coupon.code == code)).scalar_one_or_none()
        return CouponRecord.from_model(row) if row else None

    def list_coupons(self, tx: Session, seller_id: Optional[int] = None) -> List[CouponRecord]:
        query = select(Coupon).order_by(Coupon.id)
        if seller_id is not None:
            query = query.where(Coupon.seller_id == seller_id)
        return [CouponRecord.from_model(row) for row in tx.execute(query).scalars().all()]

    def create_coupon(self, tx: Session, **fields) -> CouponRecord:
        row = Coupon(**fields)
        tx.add(row)
        tx.flush()
        return CouponRecord.from_model(row)

    def count_usage(self, tx: Session, coupon_id: int) -> int:
        return tx.execute(
            select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)
        ).scalar_one()

    def has_usage(self, tx: Session, user_id: int, coupon_id: int) -> bool:
        found = tx.execute(
            select(CouponUsage.id).where(
                CouponUsage.user_id == user_id,
                CouponUsage.coupon_id == coupon_id,
            )
        ).first()
        return found is not None

    def record_usage(self, tx: Session, user_id: int, coupon_id: int, order_id: Optional[int] = None) -> None:
        # A concurrent redemption by the same user trips the unique constraint on flush
        tx.add(CouponUsage(user_id=user_id, coupon_id=coupon_id, order_id=order_id))
        tx.flush()

    def delete_usage(self, tx: Session, user_id: int, coupon_id: int) -> int:
        result = tx.execute(
            delete(CouponUsage).where(
                CouponUsage.user_id == user_id,
                CouponUsage.coupon_id == coupon_id,
            )
        )
        return result.rowcount


class OrderRepository:
    def insert_order(
        self,
        tx: Session,
        user_id: int,
        subtotal: Decimal,
        discount: Decimal,
        total: Decimal,
        coupon_id: Optional[int],
        lines: Sequence[NewOrderLine],
    ) -> OrderRecord:
        """Write the order header and its line snapshots together."""
        order = Order(
            user_id=user_id,
            coupon_id=coupon_id,
            subtotal=subtotal,
            discount=discount,
            total=total,
            status=OrderStatus.PENDING.value,
        )
        tx.add(order)
        tx.flush()

        tx.add_all([
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                seller_id=line.seller_id,
                title=line.title,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in lines
        ])
        tx.flush()
        return OrderRecord.from_model(order)

    def get_order(self, tx: Session, order_id: int, lock: bool = False) -> Optional[OrderRecord]:
        # Status may have been rewritten by a bulk UPDATE earlier in this transaction
        query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if lock:
            query = query.with_for_update()
        row = tx.execute(query).scalar_one_or_none()
        return OrderRecord.from_model(row) if row else None

    def list_order_lines(self, tx: Session, order_id: int) -> List[OrderLineRecord]:
        rows = tx.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        ).scalars().all()
        return [OrderLineRecord.from_model(row) for row in rows]

    def list_orders_for_user(self, tx: Session, user_id: int) -> List[OrderRecord]:
        rows = tx.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars().all()
        return [OrderRecord.from_model(row) for row in rows]

    def compare_and_set_status(
        self,
        tx: Session,
        order_id: int,
        expected: OrderStatus,
        new_status: OrderStatus,
    ) -> bool:
        """Move the order to `new_status` only if it is still in `expected`."""
        result = tx.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected.value)
            .values(status=new_status.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
