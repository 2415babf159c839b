import os

# Configure the service before any application module is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PYROSCOPE_ENABLED"] = "false"
os.environ["SEED_DATABASE"] = "false"
os.environ.pop("API_TOKENS", None)

from datetime import datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from redis.exceptions import RedisError, WatchError  # noqa: E402

from auth import Principal  # noqa: E402
from database import SessionLocal, engine  # noqa: E402
from models import Base, Cart, CartItem, Coupon, Order, Product  # noqa: E402
from services.cache_service import OrderCacheInvalidator  # noqa: E402
from services.cart_service import CartService  # noqa: E402
from services.checkout_service import CheckoutService  # noqa: E402
from services.coupon_service import CouponService  # noqa: E402
from services.order_service import OrderService  # noqa: E402
from services.repositories import ProductRepository  # noqa: E402

BUYER = Principal(user_id=1, role="user")
ADMIN = Principal(user_id=2, role="admin")
OTHER_BUYER = Principal(user_id=3, role="user")
SELLER = Principal(user_id=4, role="seller")

BUYER_HEADERS = {"Authorization": "Bearer user-token-123"}
ADMIN_HEADERS = {"Authorization": "Bearer admin-token-456"}
OTHER_BUYER_HEADERS = {"Authorization": "Bearer test-token-789"}
SELLER_HEADERS = {"Authorization": "Bearer seller-token-321"}


class RecordingEventSink:
    """Collects order events instead of posting them."""

    def __init__(self):
        self.created = []
        self.updated = []

    async def notify_order_created(self, order_id, user_id, total):
        self.created.append((order_id, user_id, total))

    async def notify_order_updated(self, order_id, user_id, new_status):
        self.updated.append((order_id, user_id, new_status))


class FailingEventSink:
    async def notify_order_created(self, order_id, user_id, total):
        raise RuntimeError("notification service is down")

    async def notify_order_updated(self, order_id, user_id, new_status):
        raise RuntimeError("notification service is down")


class RacingProductRepository(ProductRepository):
    """Loses the conditional stock decrement a given number of times."""

    def __init__(self, losses):
        self.losses = losses
        self.attempts = 0

    def decrement_stock(self, tx, product_id, quantity):
        self.attempts += 1
        if self.losses > 0:
            self.losses -= 1
            return False
        return super().decrement_stock(tx, product_id, quantity)


class FakePipeline:
    """Transactional pipeline over FakeRedis honouring WATCH."""

    def __init__(self, redis):
        self.redis = redis
        self.watched = {}
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def watch(self, *keys):
        if self.redis.fail:
            raise RedisError("connection refused")
        for key in keys:
            self.watched[key] = self.redis.store.get(key)
        if self.redis.on_watch is not None:
            await self.redis.on_watch()

    async def get(self, key):
        return await self.redis.get(key)

    def multi(self):
        pass

    def set(self, key, value, ex=None):
        self.queued.append((key, value))
        return self

    async def execute(self):
        if any(self.redis.store.get(key) != value for key, value in self.watched.items()):
            raise WatchError("Watched variable changed.")
        for key, value in self.queued:
            self.redis.store[key] = value
        return [True] * len(self.queued)


class FakeRedis:
    """In-memory stand-in for the async Redis client."""

    def __init__(self, fail: bool = False):
        self.store = {}
        self.deleted = []
        self.fail = fail
        # Awaited once a fill has watched its keys, to interleave other writes
        self.on_watch = None

    async def get(self, key):
        if self.fail:
            raise RedisError("connection refused")
        return self.store.get(key)

    async def incr(self, key):
        if self.fail:
            raise RedisError("connection refused")
        self.store[key] = int(self.store.get(key) or 0) + 1
        return self.store[key]

    async def delete(self, key):
        if self.fail:
            raise RedisError("connection refused")
        self.deleted.append(key)
        self.store.pop(key, None)

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class DataStore:
    """Direct database access for arranging and inspecting test state."""

    def add_product(self, title="Widget", price="100.00", stock=10, seller_id=4, deleted=False):
        with SessionLocal() as db:
            product = Product(title=title, price=Decimal(price), stock=stock, seller_id=seller_id,
                              category="Electronics")
            if deleted:
                product.deleted_at = datetime.now(timezone.utc)
            db.add(product)
            db.commit()
            return product.id

    def add_coupon(self, code, type="percentage", value="20", **fields):
        fields.setdefault("min_amount", Decimal("0"))
        with SessionLocal() as db:
            coupon = Coupon(code=code, type=type, value=Decimal(value), **fields)
            db.add(coupon)
            db.commit()
            return coupon.id

    def fill_cart(self, user_id, product_id, quantity, price=None):
        with SessionLocal() as db:
            cart = db.query(Cart).filter(Cart.user_id == user_id).first()
            if cart is None:
                cart = Cart(user_id=user_id)
                db.add(cart)
                db.flush()
            if price is None:
                price = db.get(Product, product_id).price
            db.add(CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity, price=Decimal(price)))
            db.commit()

    def create_empty_cart(self, user_id):
        with SessionLocal() as db:
            db.add(Cart(user_id=user_id))
            db.commit()

    def set_price(self, product_id, price):
        with SessionLocal() as db:
            db.get(Product, product_id).price = Decimal(price)
            db.commit()

    def stock(self, product_id):
        with SessionLocal() as db:
            return db.get(Product, product_id).stock

    def cart_quantities(self, user_id):
        with SessionLocal() as db:
            rows = (
                db.query(CartItem)
                .join(Cart, Cart.id == CartItem.cart_id)
                .filter(Cart.user_id == user_id)
                .all()
            )
            return {row.product_id: row.quantity for row in rows}

    def order_status(self, order_id):
        with SessionLocal() as db:
            return db.get(Order, order_id).status

    def count(self, model, **filters):
        with SessionLocal() as db:
            return db.query(model).filter_by(**filters).count()


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def store():
    return DataStore()


@pytest.fixture()
def event_sink():
    return RecordingEventSink()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def order_cache(fake_redis):
    return OrderCacheInvalidator(fake_redis, ttl_seconds=600)


@pytest.fixture()
def checkout_service(event_sink, order_cache):
    return CheckoutService(SessionLocal, event_sink, order_cache)


@pytest.fixture()
def order_service(event_sink, order_cache):
    return OrderService(SessionLocal, event_sink, order_cache)


@pytest.fixture()
def cart_service():
    return CartService(SessionLocal)


@pytest.fixture()
def coupon_service():
    return CouponService(SessionLocal)


@pytest.fixture()
def client(event_sink, order_cache):
    from fastapi.testclient import TestClient

    from dependencies import get_event_sink, get_order_cache
    from main import app

    app.dependency_overrides[get_event_sink] = lambda: event_sink
    app.dependency_overrides[get_order_cache] = lambda: order_cache
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
