"""Tests for the checkout unit of work."""
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import FailingEventSink, FakeRedis, RacingProductRepository
from database import SessionLocal, _engine_options
from errors import ConflictError, InvalidStateError, InvalidStateReason, NotFoundError, ServiceError
from models import Base, Cart, CartItem, CouponUsage, Order, OrderItem, Product
from records import OrderStatus
from services.cache_service import OrderCacheInvalidator
from services.checkout_service import CheckoutService
from services.repositories import ProductRepository


@pytest.fixture()
def product_id(store):
    return store.add_product(title="Widget", price="100.00", stock=10)


def _checkout(service, user_id=1, coupon_code=None):
    return asyncio.run(service.checkout(user_id, coupon_code))


def _reason_of(excinfo):
    return excinfo.value.reason


class TestSuccessfulCheckout:
    def test_without_coupon(self, checkout_service, store, product_id):
        store.fill_cart(1, product_id, 2)

        order = _checkout(checkout_service)

        assert order.subtotal == Decimal("200.00")
        assert order.discount == Decimal("0.00")
        assert order.total == Decimal("200.00")
        assert order.status == OrderStatus.PENDING
        assert order.coupon_id is None
        assert store.stock(product_id) == 8
        assert store.cart_quantities(1) == {}

    def test_percentage_coupon(self, checkout_service, store, product_id):
        coupon_id = store.add_coupon("SAVE20", type="percentage", value="20")
        store.fill_cart(1, product_id, 2)

        order = _checkout(checkout_service, coupon_code="SAVE20")

        assert order.discount == Decimal("40.00")
        assert order.total == Decimal("160.00")
        assert order.coupon_id == coupon_id
        assert store.count(CouponUsage, user_id=1, coupon_id=coupon_id) == 1

    def test_fixed_coupon(self, checkout_service, store, product_id):
        store.add_coupon("FIXED50", type="fixed", value="50")
        store.fill_cart(1, product_id, 2)

        order = _checkout(checkout_service, coupon_code="FIXED50")

        assert order.discount == Decimal("50.00")
        assert order.total == Decimal("150.00")

    def test_coupon_code_is_case_insensitive(self, checkout_service, store, product_id):
        store.add_coupon("SAVE20", value="20")
        store.fill_cart(1, product_id, 2)

        order = _checkout(checkout_service, coupon_code="  save20 ")

        assert order.total == Decimal("160.00")

    def test_percentage_discount_capped(self, checkout_service, store):
        laptop = store.add_product(title="Laptop", price="1000.00", stock=5)
        store.add_coupon("WELCOME10", value="10", max_discount=Decimal("30"), min_amount=Decimal("100"))
        store.fill_cart(1, laptop, 1)

        order = _checkout(checkout_service, coupon_code="WELCOME10")

        assert order.discount == Decimal("30.00")
        assert order.total == Decimal("970.00")

    def test_order_lines_snapshot_cart_price_and_product(self, checkout_service, store, product_id):
        store.fill_cart(1, product_id, 2, price="90.00")
        store.set_price(product_id, "120.00")

        order = _checkout(checkout_service)

        assert order.subtotal == Decimal("180.00")
        with SessionLocal() as db:
            line = db.query(OrderItem).filter_by(order_id=order.id).one()
            assert line.title == "Widget"
            assert line.seller_id == 4
            assert line.quantity == 2
            assert Decimal(line.unit_price) == Decimal("90.00")

    def test_multiple_lines(self, checkout_service, store, product_id):
        mouse = store.add_product(title="Mouse", price="25.50", stock=3)
        store.fill_cart(1, product_id, 1)
        store.fill_cart(1, mouse, 3)

        order = _checkout(checkout_service)

        assert order.subtotal == Decimal("176.50")
        assert store.stock(product_id) == 9
        assert store.stock(mouse) == 0

    def test_emits_event_and_invalidates_cache_after_commit(
        self, checkout_service, store, product_id, event_sink, fake_redis
    ):
        store.fill_cart(1, product_id, 2)

        order = _checkout(checkout_service)

        assert event_sink.created == [(order.id, 1, Decimal("200.00"))]
        assert fake_redis.deleted == ["orders:user:1"]

    def test_notification_failure_keeps_order(self, store, product_id, order_cache):
        service = CheckoutService(SessionLocal, FailingEventSink(), order_cache)
        store.fill_cart(1, product_id, 2)

        order = _checkout(service)

        assert store.count(Order, id=order.id) == 1
        assert store.stock(product_id) == 8


class TestCartValidation:
    def test_missing_cart(self, checkout_service):
        with pytest.raises(NotFoundError) as excinfo:
            _checkout(checkout_service)
        assert excinfo.value.message == "Cart not found"

    def test_empty_cart(self, checkout_service, store):
        store.create_empty_cart(1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service)
        assert _reason_of(excinfo) == InvalidStateReason.EMPTY_CART

    def test_insufficient_stock_leaves_everything_untouched(self, checkout_service, store):
        scarce = store.add_product(title="Rare Vinyl", price="100.00", stock=1)
        store.fill_cart(1, scarce, 5)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service)

        assert _reason_of(excinfo) == InvalidStateReason.INSUFFICIENT_STOCK
        assert "Rare Vinyl" in excinfo.value.message
        assert store.count(Order) == 0
        assert store.stock(scarce) == 1
        assert store.cart_quantities(1) == {scarce: 5}

    def test_deleted_product(self, checkout_service, store):
        gone = store.add_product(title="Discontinued", deleted=True)
        store.fill_cart(1, gone, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service)
        assert _reason_of(excinfo) == InvalidStateReason.PRODUCT_UNAVAILABLE

    def test_failure_on_second_line_rolls_back_first(self, checkout_service, store, product_id):
        scarce = store.add_product(title="Scarce", stock=0)
        store.fill_cart(1, product_id, 2)
        store.fill_cart(1, scarce, 1)

        with pytest.raises(InvalidStateError):
            _checkout(checkout_service)

        assert store.stock(product_id) == 10
        assert store.count(Order) == 0


class TestCouponValidation:
    def test_unknown_coupon(self, checkout_service, store, product_id):
        store.fill_cart(1, product_id, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="NOPE")
        assert _reason_of(excinfo) == InvalidStateReason.COUPON_INVALID

    def test_inactive_coupon(self, checkout_service, store, product_id):
        store.add_coupon("PAUSED", is_active=False)
        store.fill_cart(1, product_id, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="PAUSED")
        assert _reason_of(excinfo) == InvalidStateReason.COUPON_INVALID

    def test_expired_coupon(self, checkout_service, store, product_id):
        store.add_coupon("OLD", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        store.fill_cart(1, product_id, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="OLD")
        assert _reason_of(excinfo) == InvalidStateReason.COUPON_EXPIRED

    def test_coupon_single_use_per_user(self, checkout_service, store, product_id):
        store.add_coupon("SAVE20")
        store.fill_cart(1, product_id, 1)
        _checkout(checkout_service, coupon_code="SAVE20")
        store.fill_cart(1, product_id, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="SAVE20")

        assert _reason_of(excinfo) == InvalidStateReason.COUPON_ALREADY_USED
        assert store.count(Order) == 1
        assert store.stock(product_id) == 9

    def test_usage_limit(self, checkout_service, store, product_id):
        coupon_id = store.add_coupon("ONCE", usage_limit=1)
        store.fill_cart(3, product_id, 1)
        _checkout(checkout_service, user_id=3, coupon_code="ONCE")
        store.fill_cart(1, product_id, 1)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="ONCE")

        assert _reason_of(excinfo) == InvalidStateReason.COUPON_LIMIT_REACHED
        assert store.count(CouponUsage, coupon_id=coupon_id) == 1

    def test_minimum_amount(self, checkout_service, store, product_id):
        store.add_coupon("BIGSPENDER", min_amount=Decimal("500"))
        store.fill_cart(1, product_id, 2)

        with pytest.raises(InvalidStateError) as excinfo:
            _checkout(checkout_service, coupon_code="BIGSPENDER")

        assert _reason_of(excinfo) == InvalidStateReason.COUPON_BELOW_MINIMUM
        assert excinfo.value.message == "Minimum amount 500.00 required"
        assert store.stock(product_id) == 10
        assert store.cart_quantities(1) == {product_id: 2}


class TestConcurrentStockUpdates:
    def test_lost_decrement_is_retried_once(self, store, product_id, event_sink, order_cache):
        products = RacingProductRepository(losses=1)
        service = CheckoutService(SessionLocal, event_sink, order_cache, products=products)
        store.fill_cart(1, product_id, 2)

        order = _checkout(service)

        assert products.attempts == 2
        assert store.count(Order) == 1
        assert store.stock(product_id) == 8
        assert event_sink.created == [(order.id, 1, Decimal("200.00"))]

    def test_repeated_conflict_surfaces_without_partial_state(self, store, product_id, event_sink, order_cache):
        coupon_id = store.add_coupon("SAVE20")
        products = RacingProductRepository(losses=5)
        service = CheckoutService(SessionLocal, event_sink, order_cache, products=products)
        store.fill_cart(1, product_id, 2)

        with pytest.raises(ConflictError):
            _checkout(service, coupon_code="SAVE20")

        assert products.attempts == 2
        assert store.count(Order) == 0
        assert store.count(OrderItem) == 0
        assert store.count(CouponUsage, coupon_id=coupon_id) == 0
        assert store.stock(product_id) == 10
        assert store.cart_quantities(1) == {product_id: 2}
        assert event_sink.created == []

    def test_decrement_never_drives_stock_negative(self, store):
        product_id = store.add_product(stock=1)
        repository = ProductRepository()

        with SessionLocal() as tx:
            assert repository.decrement_stock(tx, product_id, 1) is True
            assert repository.decrement_stock(tx, product_id, 1) is False
            tx.commit()

        assert store.stock(product_id) == 0


@pytest.fixture()
def file_session_factory(tmp_path):
    """Session factory over an on-disk SQLite database, one connection per session."""
    url = f"sqlite:///{tmp_path / 'checkout.db'}"
    file_engine = create_engine(url, **_engine_options(url))
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    file_engine.dispose()


class TestLastUnitContention:
    def test_two_buyers_race_for_the_last_unit(self, file_session_factory, event_sink):
        with file_session_factory() as db:
            product = Product(title="Last one", price=Decimal("50.00"), stock=1, category="Electronics")
            db.add(product)
            db.flush()
            for user_id in (1, 3):
                cart = Cart(user_id=user_id)
                db.add(cart)
                db.flush()
                db.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=1, price=product.price))
            db.commit()
            product_id = product.id

        service = CheckoutService(file_session_factory, event_sink, OrderCacheInvalidator(FakeRedis()))
        start = threading.Barrier(2)
        orders, failures = [], []

        def buy(user_id):
            start.wait()
            try:
                orders.append(asyncio.run(service.checkout(user_id)))
            except ServiceError as e:
                failures.append(e)

        threads = [threading.Thread(target=buy, args=(user_id,)) for user_id in (1, 3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(orders) == 1
        assert len(failures) == 1
        with file_session_factory() as db:
            assert db.get(Product, product_id).stock == 0
            assert db.query(Order).count() == 1
            assert db.query(OrderItem).count() == 1
        assert len(event_sink.created) == 1
