"""
Notification system for order events.

Events (order confirmation, status updates, low-stock alerts) are POSTed as JSON
to every URL in ``NOTIFICATION_URLS``. Delivery is a single best-effort attempt
scheduled in the background; the caller never waits for it and never sees its errors.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Coroutine, Dict, Optional, Set

import httpx

from . import config, models, schemas
from .models import OrderStatus, utcnow

logger = logging.getLogger(__name__)

# Strong references to scheduled tasks so they are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()

# Used when the caller runs outside an event loop (sync routes, worker threads)
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="side-effects")


def fire_and_forget(coro: Coroutine) -> None:
    """
    Run a coroutine in the background.

    Scheduled on the running event loop when there is one, otherwise run to
    completion on a worker thread.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _executor.submit(asyncio.run, coro)
        return

    task = loop.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def send_event(event_type: str, data: Dict[str, Any]) -> None:
    """
    Send an event to all registered notification URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.status_changed")
        data: Event data payload
    """
    if not config.NOTIFICATION_URLS:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=config.SERVICE_TIMEOUT) as client:
        tasks = [send_single_event(client, url, payload) for url in config.NOTIFICATION_URLS]
        # Send to all targets concurrently
        await asyncio.gather(*tasks, return_exceptions=True)


async def send_single_event(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.error(f"Notification {payload['event']} failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.error(f"Notification {payload['event']} error for {url}: {e}")


def order_payload(order: models.Order) -> Dict[str, Any]:
    return schemas.Order.model_validate(order).model_dump(mode="json")


def send_order_confirmation(order: models.Order, email: Optional[str] = None) -> None:
    """
    Notify that an order was placed.

    Args:
        order: The new order
        email: Customer contact address (guest email is used when omitted)
    """
    data = order_payload(order)
    data["email"] = email or order.guest_email
    fire_and_forget(send_event("order.created", data))


def send_order_status_update(order: models.Order, status: OrderStatus, note: Optional[str] = None) -> None:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "user_id": order.user_id,
        "email": order.guest_email,
        "status": OrderStatus(status).value,
        "note": note,
    }
    fire_and_forget(send_event("order.status_changed", data))


def send_low_stock_alert(variant: models.ProductVariant, remaining: int) -> None:
    data = {
        "product_id": variant.product_id,
        "size": variant.size,
        "color": variant.color_name,
        "sku": variant.sku,
        "stock": remaining,
        "threshold": config.LOW_STOCK_THRESHOLD,
    }
    fire_and_forget(send_event("inventory.low_stock", data))
