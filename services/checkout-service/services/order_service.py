"""Order lifecycle: status transitions, cancellation with compensation, and reads."""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace
from starlette.concurrency import run_in_threadpool

from auth import Principal
from database import SessionFactory, transaction, transaction_retry
from errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidStateReason,
    NotFoundError,
)
from monitoring import (
    order_cancellations_counter,
    order_status_transitions_counter,
    transaction_conflicts_counter,
)
from records import OrderLineRecord, OrderRecord, OrderStatus
from services.cache_service import OrderCacheInvalidator
from services.notification_service import OrderEventSink
from services.repositories import CouponRepository, OrderRepository, ProductRepository

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
# Targets reachable through a status update; cancellation has its own operation
UPDATABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED}


def _order_to_cache(order: OrderRecord) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "coupon_id": order.coupon_id,
        "subtotal": str(order.subtotal),
        "discount": str(order.discount),
        "total": str(order.total),
        "status": order.status.value,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def _order_from_cache(data: Dict[str, Any]) -> OrderRecord:
    return OrderRecord(
        id=data["id"],
        user_id=data["user_id"],
        coupon_id=data["coupon_id"],
        subtotal=Decimal(data["subtotal"]),
        discount=Decimal(data["discount"]),
        total=Decimal(data["total"]),
        status=OrderStatus(data["status"]),
        created_at=datetime.fromisoformat(data["created_at"]) if data["created_at"] else None,
    )


def parse_status(value: str) -> OrderStatus:
    """Resolve a requested target status, rejecting anything outside the forward lifecycle."""
    try:
        status = OrderStatus(value)
    except ValueError:
        raise InvalidStateError(InvalidStateReason.INVALID_STATUS, "Invalid status")
    if status not in UPDATABLE_STATUSES:
        raise InvalidStateError(InvalidStateReason.INVALID_STATUS, "Invalid status")
    return status


class OrderService:
    """Service for managing placed orders."""

    def __init__(
        self,
        session_factory: SessionFactory,
        event_sink: OrderEventSink,
        cache: OrderCacheInvalidator,
        products: Optional[ProductRepository] = None,
        coupons: Optional[CouponRepository] = None,
        orders: Optional[OrderRepository] = None,
    ):
        """
        Initialize order service.

        Args:
            session_factory: Opens the session backing each unit of work
            event_sink: Receives order-updated events after commit
            cache: Per-user order list cache
            products: Inventory store, credited back on cancellation
            coupons: Coupon ledger, released on cancellation
            orders: Order store
        """
        self.session_factory = session_factory
        self.event_sink = event_sink
        self.cache = cache
        self.products = products or ProductRepository()
        self.coupons = coupons or CouponRepository()
        self.orders = orders or OrderRepository()
        self.tracer = trace.get_tracer(__name__)

    # Reads

    async def get_order(self, order_id: int, principal: Principal) -> Tuple[OrderRecord, List[OrderLineRecord]]:
        """
        Get an order with its line items.

        Raises:
            NotFoundError: If the order does not exist
            ForbiddenError: If the caller neither owns the order nor is privileged
        """
        return await run_in_threadpool(self.load_order, order_id, principal)

    def load_order(self, order_id: int, principal: Principal) -> Tuple[OrderRecord, List[OrderLineRecord]]:
        with self.tracer.start_as_current_span("db.query.get_order") as db_span, \
                transaction(self.session_factory) as tx:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("order.id", order_id)

            order = self.orders.get_order(tx, order_id)
            if order is None:
                raise NotFoundError("order", order_id)
            if not principal.can_access(order.user_id):
                raise ForbiddenError("Not authorized to view this order")
            return order, self.orders.list_order_lines(tx, order_id)

    async def list_orders(self, user_id: int) -> List[OrderRecord]:
        """
        Get all orders for a user, newest first.

        Served from the cache when possible; a cache miss or a cache failure
        reads from the database. The entry is repopulated only if no
        invalidation happened while the list was loading.
        """
        cached = await self.cache.get_user_orders(user_id)
        if cached is not None:
            logger.debug("Order list served from cache", extra={"user_id": user_id})
            return [_order_from_cache(item) for item in cached]

        generation = await self.cache.get_generation(user_id)
        orders = await run_in_threadpool(self.load_orders, user_id)
        if generation is not None:
            await self.cache.set_user_orders(user_id, [_order_to_cache(order) for order in orders], generation)
        return orders

    def load_orders(self, user_id: int) -> List[OrderRecord]:
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span, \
                transaction(self.session_factory) as tx:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            orders = self.orders.list_orders_for_user(tx, user_id)

            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    # Transitions

    async def update_status(self, order_id: int, new_status: str, principal: Principal) -> OrderRecord:
        """
        Move an order forward in its lifecycle.

        Args:
            order_id: Order identifier
            new_status: One of pending, paid, shipped, delivered
            principal: Caller, must be privileged

        Returns:
            The updated order

        Raises:
            ForbiddenError: If the caller is not privileged
            NotFoundError: If the order does not exist
            InvalidStateError: On an unknown status or a terminal current status
        """
        if not principal.is_privileged:
            raise ForbiddenError("Only administrators can update order status")

        previous, order = await run_in_threadpool(self.change_status, order_id, new_status)

        order_status_transitions_counter.add(1, {"from": previous.value, "to": order.status.value})
        logger.info("Order status updated", extra={
            "order_id": order.id,
            "user_id": order.user_id,
            "from_status": previous.value,
            "to_status": order.status.value,
            "updated_by": principal.user_id
        })

        await self._after_commit(order)
        return order

    @transaction_retry()
    def change_status(self, order_id: int, new_status: str) -> Tuple[OrderStatus, OrderRecord]:
        """Compare-and-set the status. Blocking; retried once on Conflict or Internal."""
        try:
            with self.tracer.start_as_current_span("db.transaction.update_order_status") as tx_span, \
                    transaction(self.session_factory) as tx:
                tx_span.set_attribute("order.id", order_id)

                order = self.orders.get_order(tx, order_id)
                if order is None:
                    raise NotFoundError("order", order_id)

                target = parse_status(new_status)
                if order.status in TERMINAL_STATUSES:
                    raise InvalidStateError(
                        InvalidStateReason.ILLEGAL_TRANSITION,
                        f"Cannot update {order.status.value} order",
                    )

                if not self.orders.compare_and_set_status(tx, order_id, order.status, target):
                    raise ConflictError(f"Order {order_id} changed status concurrently")

                tx_span.set_attribute("order.status.before", order.status.value)
                tx_span.set_attribute("order.status.after", target.value)
                return order.status, self.orders.get_order(tx, order_id)
        except ConflictError:
            transaction_conflicts_counter.add(1, {"operation": "update_status"})
            raise

    async def cancel(self, order_id: int, principal: Principal) -> OrderRecord:
        """
        Cancel a pending order, returning its stock and releasing its coupon.

        Raises:
            NotFoundError: If the order does not exist
            ForbiddenError: If the caller neither owns the order nor is privileged
            InvalidStateError: If the order is already cancelled or no longer pending
        """
        order = await run_in_threadpool(self.cancel_order, order_id, principal)

        order_cancellations_counter.add(1, {"coupon_released": str(order.coupon_id is not None)})
        order_status_transitions_counter.add(1, {"from": OrderStatus.PENDING.value, "to": order.status.value})
        logger.info("Order cancelled", extra={
            "order_id": order.id,
            "user_id": order.user_id,
            "cancelled_by": principal.user_id,
            "coupon_id": order.coupon_id
        })

        await self._after_commit(order)
        return order

    @transaction_retry()
    def cancel_order(self, order_id: int, principal: Principal) -> OrderRecord:
        """Cancellation unit of work. Blocking; retried once on Conflict or Internal."""
        try:
            with self.tracer.start_as_current_span("db.transaction.cancel_order") as tx_span, \
                    transaction(self.session_factory) as tx:
                tx_span.set_attribute("order.id", order_id)

                order = self.orders.get_order(tx, order_id)
                if order is None:
                    raise NotFoundError("order", order_id)
                if not principal.can_access(order.user_id):
                    raise ForbiddenError("Not authorized to cancel this order")
                if order.status == OrderStatus.CANCELLED:
                    raise InvalidStateError(InvalidStateReason.ALREADY_CANCELLED, "Order already cancelled")
                if order.status != OrderStatus.PENDING:
                    raise InvalidStateError(InvalidStateReason.NOT_PENDING, "Only pending orders can be cancelled")

                # Status first: a concurrent cancel loses here before touching stock
                if not self.orders.compare_and_set_status(tx, order_id, OrderStatus.PENDING, OrderStatus.CANCELLED):
                    raise ConflictError(f"Order {order_id} changed status concurrently")

                for line in self.orders.list_order_lines(tx, order_id):
                    with self.tracer.start_as_current_span("db.query.restore_product_stock") as update_span:
                        update_span.set_attribute("db.operation", "UPDATE")
                        update_span.set_attribute("db.table", "products")
                        update_span.set_attribute("product.id", line.product_id)
                        update_span.set_attribute("product.quantity", line.quantity)

                        if not self.products.increment_stock(tx, line.product_id, line.quantity):
                            logger.warning("Product missing while restoring stock", extra={
                                "order_id": order_id,
                                "product_id": line.product_id,
                                "quantity": line.quantity
                            })

                if order.coupon_id is not None:
                    released = self.coupons.delete_usage(tx, order.user_id, order.coupon_id)
                    tx_span.set_attribute("coupon.usage_released", released)

                return self.orders.get_order(tx, order_id)
        except ConflictError:
            transaction_conflicts_counter.add(1, {"operation": "cancel"})
            raise

    async def _after_commit(self, order: OrderRecord) -> None:
        """Best-effort side effects. The transition is already durable."""
        try:
            await self.event_sink.notify_order_updated(order.id, order.user_id, order.status.value)
        except Exception as e:
            logger.error("Order updated notification failed", extra={
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
