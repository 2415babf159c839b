"""Checkout: turns a user's cart into an order in one unit of work."""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from opentelemetry import trace
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from database import SessionFactory, transaction, transaction_retry
from errors import (
    ConflictError,
    InvalidStateError,
    InvalidStateReason,
    NotFoundError,
    ServiceError,
)
from monitoring import (
    checkout_amount_histogram,
    checkout_counter,
    checkout_discount_histogram,
    coupon_redemptions_counter,
    transaction_conflicts_counter,
)
from records import CartLineRecord, CouponRecord, NewOrderLine, OrderRecord, normalize_coupon_code
from services.cache_service import OrderCacheInvalidator
from services.notification_service import OrderEventSink
from services.pricing import compute_subtotal, compute_totals, quantize_money
from services.repositories import (
    CartRepository,
    CouponRepository,
    OrderRepository,
    ProductRepository,
)

logger = logging.getLogger(__name__)


class CheckoutService:
    """Checkout transaction coordinator."""

    def __init__(
        self,
        session_factory: SessionFactory,
        event_sink: OrderEventSink,
        cache: OrderCacheInvalidator,
        products: Optional[ProductRepository] = None,
        carts: Optional[CartRepository] = None,
        coupons: Optional[CouponRepository] = None,
        orders: Optional[OrderRepository] = None,
    ):
        """
        Initialize checkout service.

        Args:
            session_factory: Opens the session backing each unit of work
            event_sink: Receives order-created events after commit
            cache: Invalidated for the buyer after commit
            products: Inventory store
            carts: Cart store
            coupons: Coupon ledger
            orders: Order store
        """
        self.session_factory = session_factory
        self.event_sink = event_sink
        self.cache = cache
        self.products = products or ProductRepository()
        self.carts = carts or CartRepository()
        self.coupons = coupons or CouponRepository()
        self.orders = orders or OrderRepository()
        self.tracer = trace.get_tracer(__name__)

    async def checkout(self, user_id: int, coupon_code: Optional[str] = None) -> OrderRecord:
        """
        Place an order for everything in the user's cart.

        Args:
            user_id: Buyer
            coupon_code: Optional coupon code, matched case-insensitively

        Returns:
            The committed order

        Raises:
            NotFoundError: If the user has no cart
            InvalidStateError: On cart, stock or coupon violations
            ConflictError: If a concurrent checkout won twice in a row
            InternalError: On storage failures that survived the retry
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", user_id)
        span.set_attribute("checkout.coupon_supplied", coupon_code is not None)

        try:
            order = await run_in_threadpool(self.place_order, user_id, coupon_code)
        except ServiceError as e:
            checkout_counter.add(1, {"status": e.category})
            logger.warning("Checkout rejected", extra={
                "user_id": user_id,
                "error_category": e.category,
                "reason": getattr(e, "reason", None),
                "error": e.message
            })
            raise

        await self._after_commit(order)

        checkout_counter.add(1, {"status": "completed"})
        checkout_amount_histogram.record(float(order.total), {"coupon_applied": str(order.coupon_id is not None)})
        if order.coupon_id is not None:
            checkout_discount_histogram.record(float(order.discount))
            coupon_redemptions_counter.add(1, {"coupon_id": str(order.coupon_id)})

        logger.info("Checkout completed", extra={
            "user_id": user_id,
            "order_id": order.id,
            "subtotal": str(order.subtotal),
            "discount": str(order.discount),
            "total": str(order.total),
            "coupon_id": order.coupon_id
        })
        return order

    @transaction_retry()
    def place_order(self, user_id: int, coupon_code: Optional[str] = None) -> OrderRecord:
        """
        Run the checkout unit of work. Blocking; retried once on Conflict or Internal.

        Every validation happens before the first write, and every write is
        made through the same transaction handle, so a failure at any step
        leaves no order, stock change or coupon usage behind.
        """
        code = normalize_coupon_code(coupon_code)
        try:
            with self.tracer.start_as_current_span("db.transaction.checkout") as tx_span, \
                    transaction(self.session_factory) as tx:
                tx_span.set_attribute("user.id", user_id)

                cart = self.carts.get_cart(tx, user_id)
                if cart is None:
                    raise NotFoundError("cart", user_id)

                lines = self.carts.list_line_items(tx, cart.id)
                if not lines:
                    raise InvalidStateError(InvalidStateReason.EMPTY_CART, "Cart is empty")

                order_lines = self._validate_lines(tx, lines)
                subtotal = compute_subtotal(lines)

                coupon = None
                if code is not None:
                    coupon = self._validate_coupon(tx, user_id, code, subtotal)

                prices = compute_totals(lines, coupon)
                tx_span.set_attribute("order.subtotal", float(prices.subtotal))
                tx_span.set_attribute("order.discount", float(prices.discount))

                order = self.orders.insert_order(
                    tx,
                    user_id=user_id,
                    subtotal=prices.subtotal,
                    discount=prices.discount,
                    total=prices.total,
                    coupon_id=coupon.id if coupon else None,
                    lines=order_lines,
                )
                if coupon is not None:
                    self.coupons.record_usage(tx, user_id, coupon.id, order.id)

                self._take_stock(tx, order_lines)

                with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span:
                    db_span.set_attribute("db.operation", "DELETE")
                    db_span.set_attribute("db.table", "cart_items")
                    db_span.set_attribute("db.rows_affected", self.carts.delete_line_items(tx, cart.id))

                tx_span.set_attribute("order.id", order.id)
                return order
        except ConflictError as e:
            transaction_conflicts_counter.add(1, {"operation": "checkout"})
            logger.warning("Checkout lost a concurrent update", extra={
                "user_id": user_id,
                "error": e.message
            })
            raise

    def _validate_lines(self, tx: Session, lines: Sequence[CartLineRecord]) -> List[NewOrderLine]:
        order_lines = []
        for line in lines:
            with self.tracer.start_as_current_span("db.query.get_product") as db_span:
                db_span.set_attribute("db.operation", "SELECT")
                db_span.set_attribute("db.table", "products")
                db_span.set_attribute("product.id", line.product_id)

                product = self.products.get_product(tx, line.product_id)

            if product is None or not product.is_available:
                raise InvalidStateError(
                    InvalidStateReason.PRODUCT_UNAVAILABLE,
                    f"Product {line.product_id} no longer available",
                )
            if product.stock < line.quantity:
                raise InvalidStateError(
                    InvalidStateReason.INSUFFICIENT_STOCK,
                    f"Insufficient stock for {product.title}",
                )

            order_lines.append(NewOrderLine(
                product_id=product.id,
                seller_id=product.seller_id,
                title=product.title,
                quantity=line.quantity,
                unit_price=line.price,
            ))
        return order_lines

    def _validate_coupon(self, tx: Session, user_id: int, code: str, subtotal) -> CouponRecord:
        # Row lock first: usage counts read below must not move until commit
        coupon = self.coupons.find_active_coupon(tx, code, lock=True)
        if coupon is None:
            raise InvalidStateError(InvalidStateReason.COUPON_INVALID, "Invalid coupon")

        if coupon.is_expired(datetime.now(timezone.utc)):
            raise InvalidStateError(InvalidStateReason.COUPON_EXPIRED, "Coupon expired")

        if self.coupons.has_usage(tx, user_id, coupon.id):
            raise InvalidStateError(InvalidStateReason.COUPON_ALREADY_USED, "Coupon already used")

        if coupon.usage_limit is not None and self.coupons.count_usage(tx, coupon.id) >= coupon.usage_limit:
            raise InvalidStateError(InvalidStateReason.COUPON_LIMIT_REACHED, "Coupon usage limit reached")

        if subtotal < coupon.min_amount:
            raise InvalidStateError(
                InvalidStateReason.COUPON_BELOW_MINIMUM,
                f"Minimum amount {quantize_money(coupon.min_amount)} required",
            )
        return coupon

    def _take_stock(self, tx: Session, order_lines: Sequence[NewOrderLine]) -> None:
        for line in order_lines:
            with self.tracer.start_as_current_span("db.query.update_product_stock") as update_span:
                update_span.set_attribute("db.operation", "UPDATE")
                update_span.set_attribute("db.table", "products")
                update_span.set_attribute("product.id", line.product_id)
                update_span.set_attribute("product.quantity", line.quantity)

                if not self.products.decrement_stock(tx, line.product_id, line.quantity):
                    update_span.set_attribute("db.rows_affected", 0)
                    raise ConflictError(f"Stock for product {line.product_id} changed during checkout")
                update_span.set_attribute("db.rows_affected", 1)

    async def _after_commit(self, order: OrderRecord) -> None:
        """Best-effort side effects. The order is already durable."""
        try:
            await self.event_sink.notify_order_created(order.id, order.user_id, order.total)
        except Exception as e:
            logger.error("Order created notification failed", extra={
                "order_id": order.id,
                "error": str(e)
            })
        try:
            await self.cache.invalidate_user_orders(order.user_id)
        except Exception as e:
            logger.error("Order cache invalidation failed", extra={
                "user_id": order.user_id,
                "error": str(e)
            })
