"""Cart management service."""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from opentelemetry import trace
from sqlalchemy.orm import Session

from database import SessionFactory, transaction, transaction_retry
from errors import InvalidStateError, InvalidStateReason, NotFoundError
from monitoring import cart_updates_counter
from records import CartRecord, ProductRecord
from services.pricing import ZERO, quantize_money
from services.repositories import CartRepository, ProductRepository

logger = logging.getLogger(__name__)


class CartService:
    """
    Service for managing shopping carts.

    Lines keep the product price captured when they were first added. Cart
    operations check stock but never change it: stock only moves at checkout
    and on cancellation.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        products: Optional[ProductRepository] = None,
        carts: Optional[CartRepository] = None,
    ):
        """
        Initialize cart service.

        Args:
            session_factory: Opens the session backing each unit of work
            products: Product store, read only
            carts: Cart store
        """
        self.session_factory = session_factory
        self.products = products or ProductRepository()
        self.carts = carts or CartRepository()
        self.tracer = trace.get_tracer(__name__)

    def get_cart(self, user_id: int) -> Dict[str, Any]:
        """
        Get user's cart contents.

        Args:
            user_id: User identifier

        Returns:
            Cart contents with items and total. Users without a cart get an
            empty one; nothing is created.
        """
        with transaction(self.session_factory) as tx:
            return self._cart_view(tx, user_id, self.carts.get_cart(tx, user_id))

    @transaction_retry()
    def add_item(self, user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
        """
        Add a product to the user's cart, creating the cart on first use.

        Adding a product already in the cart increases its quantity.

        Raises:
            NotFoundError: If the product does not exist or was removed
            InvalidStateError: If the requested total quantity exceeds stock
        """
        self._check_quantity(quantity)
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        with transaction(self.session_factory) as tx:
            product = self._get_available_product(tx, product_id)

            cart = self.carts.get_cart(tx, user_id) or self.carts.create_cart(tx, user_id)
            existing = self.carts.get_line_item(tx, cart.id, product_id)
            new_quantity = quantity + (existing.quantity if existing else 0)
            self._check_stock(product, new_quantity)

            with self.tracer.start_as_current_span("db.query.save_cart_item") as db_span:
                db_span.set_attribute("db.operation", "UPDATE" if existing else "INSERT")
                db_span.set_attribute("db.table", "cart_items")
                db_span.set_attribute("user.id", user_id)
                db_span.set_attribute("product.id", product_id)

                # Merged lines keep their original price snapshot
                price = existing.price if existing else product.price
                self.carts.save_line_item(tx, cart.id, product_id, new_quantity, price)

            view = self._cart_view(tx, user_id, cart)

        cart_updates_counter.add(1, {"operation": "add"})
        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_title": product.title,
            "quantity": quantity
        })
        return view

    @transaction_retry()
    def update_item(self, user_id: int, product_id: int, quantity: int) -> Dict[str, Any]:
        """
        Set the quantity of a line already in the cart.

        Raises:
            NotFoundError: If the line or its product does not exist
            InvalidStateError: If the quantity exceeds stock
        """
        self._check_quantity(quantity)

        with transaction(self.session_factory) as tx:
            cart = self.carts.get_cart(tx, user_id)
            existing = self.carts.get_line_item(tx, cart.id, product_id) if cart else None
            if existing is None:
                raise NotFoundError("cart item", product_id)

            product = self._get_available_product(tx, product_id)
            self._check_stock(product, quantity)
            self.carts.save_line_item(tx, cart.id, product_id, quantity, existing.price)

            view = self._cart_view(tx, user_id, cart)

        cart_updates_counter.add(1, {"operation": "update"})
        logger.info("Updated cart item", extra={
            "user_id": user_id,
            "product_id": product_id,
            "quantity": quantity
        })
        return view

    def remove_item(self, user_id: int, product_id: int) -> Dict[str, Any]:
        """
        Remove one product from the cart.

        Raises:
            NotFoundError: If the product is not in the cart
        """
        with transaction(self.session_factory) as tx:
            cart = self.carts.get_cart(tx, user_id)
            if cart is None or self.carts.delete_line_item(tx, cart.id, product_id) == 0:
                raise NotFoundError("cart item", product_id)
            view = self._cart_view(tx, user_id, cart)

        cart_updates_counter.add(1, {"operation": "remove"})
        return view

    def clear(self, user_id: int) -> Dict[str, Any]:
        """Remove every line from the user's cart."""
        with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span, \
                transaction(self.session_factory) as tx:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            cart = self.carts.get_cart(tx, user_id)
            deleted_count = self.carts.delete_line_items(tx, cart.id) if cart else 0

            db_span.set_attribute("db.rows_affected", deleted_count)

        cart_updates_counter.add(1, {"operation": "clear"})
        return self._empty_view(user_id)

    def _get_available_product(self, tx: Session, product_id: int) -> ProductRecord:
        product = self.products.get_product(tx, product_id)
        if product is None or not product.is_available:
            raise NotFoundError("product", product_id)
        return product

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity < 1:
            raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Quantity must be at least 1")

    @staticmethod
    def _check_stock(product: ProductRecord, quantity: int) -> None:
        if product.stock < quantity:
            raise InvalidStateError(
                InvalidStateReason.INSUFFICIENT_STOCK,
                f"Insufficient stock for {product.title}",
            )

    @staticmethod
    def _empty_view(user_id: int) -> Dict[str, Any]:
        return {"user_id": user_id, "items": [], "total": ZERO}

    def _cart_view(self, tx: Session, user_id: int, cart: Optional[CartRecord]) -> Dict[str, Any]:
        if cart is None:
            return self._empty_view(user_id)

        items = []
        total = ZERO
        for line in self.carts.list_line_items(tx, cart.id):
            product = self.products.get_product(tx, line.product_id)
            line_total = quantize_money(line.price * Decimal(line.quantity))
            total += line_total
            items.append({
                "product_id": line.product_id,
                "title": product.title if product else None,
                "price": line.price,
                "quantity": line.quantity,
                "subtotal": line_total
            })

        return {
            "user_id": user_id,
            "items": items,
            "total": total
        }
