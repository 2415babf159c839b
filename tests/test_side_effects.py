"""Tests for the post-commit collaborators: notification sink and order cache."""
import asyncio
import json
from decimal import Decimal

import httpx

from conftest import FakeRedis
from services.cache_service import OrderCacheInvalidator, user_orders_generation_key, user_orders_key
from services.notification_service import HttpOrderEventSink


def _sink(handler):
    async def run(action):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            await action(HttpOrderEventSink(http_client, base_url="http://notifications.test/"))

    return run


class TestHttpOrderEventSink:
    def test_order_created_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        asyncio.run(_sink(handler)(lambda sink: sink.notify_order_created(7, 1, Decimal("160.00"))))

        assert len(requests) == 1
        assert str(requests[0].url) == "http://notifications.test/api/notifications/orders"
        assert json.loads(requests[0].content) == {
            "type": "ORDER_CREATED",
            "order_id": 7,
            "user_id": 1,
            "total": 160.0,
        }

    def test_order_updated_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202)

        asyncio.run(_sink(handler)(lambda sink: sink.notify_order_updated(7, 1, "shipped")))

        assert json.loads(requests[0].content)["status"] == "shipped"
        assert json.loads(requests[0].content)["type"] == "ORDER_UPDATED"

    def test_error_status_is_swallowed(self):
        asyncio.run(_sink(lambda request: httpx.Response(503))(
            lambda sink: sink.notify_order_updated(7, 1, "paid")
        ))

    def test_connection_failure_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        asyncio.run(_sink(handler)(lambda sink: sink.notify_order_created(7, 1, Decimal("10.00"))))


class TestOrderCacheInvalidator:
    def test_round_trip(self):
        redis_client = FakeRedis()
        cache = OrderCacheInvalidator(redis_client, ttl_seconds=60)

        assert asyncio.run(cache.set_user_orders(5, [{"id": 1}], generation=0)) is True

        assert asyncio.run(cache.get_user_orders(5)) == [{"id": 1}]
        assert user_orders_key(5) == "orders:user:5"

    def test_miss(self):
        assert asyncio.run(OrderCacheInvalidator(FakeRedis()).get_user_orders(5)) is None

    def test_invalidate_bumps_generation(self):
        redis_client = FakeRedis()
        cache = OrderCacheInvalidator(redis_client)
        asyncio.run(cache.set_user_orders(5, [], generation=0))

        asyncio.run(cache.invalidate_user_orders(5))

        assert redis_client.deleted == ["orders:user:5"]
        assert "orders:user:5" not in redis_client.store
        assert asyncio.run(cache.get_generation(5)) == 1
        assert redis_client.store[user_orders_generation_key(5)] == 1

    def test_fill_with_outdated_generation_is_skipped(self):
        redis_client = FakeRedis()
        cache = OrderCacheInvalidator(redis_client)
        generation = asyncio.run(cache.get_generation(5))
        asyncio.run(cache.invalidate_user_orders(5))

        assert asyncio.run(cache.set_user_orders(5, [{"id": 1}], generation)) is False
        assert asyncio.run(cache.get_user_orders(5)) is None

    def test_invalidation_between_check_and_write_aborts_the_fill(self):
        redis_client = FakeRedis()
        cache = OrderCacheInvalidator(redis_client)
        read_generation = redis_client.get

        async def get_then_invalidate(key):
            value = await read_generation(key)
            redis_client.store[user_orders_generation_key(5)] = 7
            return value

        redis_client.get = get_then_invalidate

        assert asyncio.run(cache.set_user_orders(5, [{"id": 1}], generation=0)) is False
        assert "orders:user:5" not in redis_client.store

    def test_redis_failures_are_logged_not_raised(self):
        cache = OrderCacheInvalidator(FakeRedis(fail=True))

        asyncio.run(cache.invalidate_user_orders(5))
        assert asyncio.run(cache.get_generation(5)) is None
        assert asyncio.run(cache.set_user_orders(5, [], generation=0)) is False
        assert asyncio.run(cache.get_user_orders(5)) is None
