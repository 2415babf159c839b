"""Order event dispatch to the downstream notification service."""
import httpx
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Protocol

from config import NOTIFICATION_SERVICE_URL
from monitoring import notification_duration_histogram

logger = logging.getLogger(__name__)


class OrderEventSink(Protocol):
    """Receives order events after the owning transaction has committed."""

    async def notify_order_created(self, order_id: int, user_id: int, total: Decimal) -> None:
        ...

    async def notify_order_updated(self, order_id: int, user_id: int, new_status: str) -> None:
        ...


class HttpOrderEventSink:
    """Posts order events to the notification service. Fire-and-forget."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str = NOTIFICATION_SERVICE_URL):
        """
        Initialize the event sink.

        Args:
            http_client: Async HTTP client
            base_url: Notification service base URL
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def notify_order_created(self, order_id: int, user_id: int, total: Decimal) -> None:
        await self._post({
            "type": "ORDER_CREATED",
            "order_id": order_id,
            "user_id": user_id,
            "total": float(total),
        })

    async def notify_order_updated(self, order_id: int, user_id: int, new_status: str) -> None:
        await self._post({
            "type": "ORDER_UPDATED",
            "order_id": order_id,
            "user_id": user_id,
            "status": new_status,
        })

    async def _post(self, event: Dict[str, Any]) -> None:
        """
        Deliver one event.

        Failures are logged and swallowed: the order they describe has
        already been committed.
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/notifications/orders",
                json=event
            )
            status_code = response.status_code
            if response.status_code >= 400:
                status = "error"
                logger.warning("Notification service returned error status", extra={
                    "status_code": response.status_code,
                    "event_type": event["type"],
                    "order_id": event["order_id"]
                })
        except httpx.HTTPError as e:
            status = "error"
            status_code = 0  # Connection failure
            logger.error("Failed to dispatch order event", extra={
                "event_type": event["type"],
                "order_id": event["order_id"],
                "user_id": event["user_id"],
                "error": str(e)
            })
        finally:
            duration = time.time() - start_time
            notification_duration_histogram.record(
                duration,
                {
                    "event_type": event["type"],
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )
