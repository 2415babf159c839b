"""Dependency injection for services."""
from typing import Any

from fastapi import Depends, Request

from database import SessionFactory, SessionLocal
from services.cache_service import OrderCacheInvalidator
from services.cart_service import CartService
from services.checkout_service import CheckoutService
from services.coupon_service import CouponService
from services.notification_service import HttpOrderEventSink, OrderEventSink
from services.order_service import OrderService


def get_session_factory() -> SessionFactory:
    """Session factory backing every unit of work."""
    return SessionLocal


def get_async_redis(request: Request) -> Any:
    """Get async Redis client from app state."""
    return request.app.state.async_redis_client


def get_http_client(request: Request) -> Any:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_event_sink(http_client: Any = Depends(get_http_client)) -> OrderEventSink:
    """Order event sink posting to the notification service."""
    return HttpOrderEventSink(http_client)


def get_order_cache(redis_client: Any = Depends(get_async_redis)) -> OrderCacheInvalidator:
    """Per-user order list cache."""
    return OrderCacheInvalidator(redis_client)


def get_checkout_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    event_sink: OrderEventSink = Depends(get_event_sink),
    cache: OrderCacheInvalidator = Depends(get_order_cache)
) -> CheckoutService:
    """Get checkout service instance."""
    return CheckoutService(session_factory, event_sink, cache)


def get_order_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    event_sink: OrderEventSink = Depends(get_event_sink),
    cache: OrderCacheInvalidator = Depends(get_order_cache)
) -> OrderService:
    """Get order service instance."""
    return OrderService(session_factory, event_sink, cache)


def get_cart_service(session_factory: SessionFactory = Depends(get_session_factory)) -> CartService:
    """Get cart service instance."""
    return CartService(session_factory)


def get_coupon_service(session_factory: SessionFactory = Depends(get_session_factory)) -> CouponService:
    """Get coupon service instance."""
    return CouponService(session_factory)
