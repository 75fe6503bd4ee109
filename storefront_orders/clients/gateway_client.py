"""
HTTP client for the payment gateway (Razorpay-compatible REST API).

Amounts go over the wire in the currency's minor unit (paise). Every network or
HTTP error, timeouts included, surfaces as ``UpstreamFailure`` so callers can map
it to a retryable 503.
"""
import logging
from decimal import Decimal
from typing import Optional

import httpx

from .. import config
from ..errors import UpstreamFailure

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=config.GATEWAY_API_URL,
        timeout=config.GATEWAY_TIMEOUT,
        auth=(config.GATEWAY_KEY_ID, config.GATEWAY_KEY_SECRET),
    )


async def create_order(amount: Decimal, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
    """
    Open a gateway order for the customer to pay.

    Args:
        amount: Amount in major units (rupees)
        currency: ISO currency code
        receipt: Merchant reference shown in the gateway dashboard
        notes: Free-form key/values stored with the gateway order

    Returns:
        Gateway order data; ``id`` is the gateway order id

    Raises:
        UpstreamFailure: If the gateway is unreachable, times out or rejects the request
    """
    payload = {
        "amount": to_minor_units(amount),
        "currency": currency,
        "receipt": receipt,
        "notes": notes or {},
    }
    try:
        async with _client() as client:
            response = await client.post("/orders", json=payload)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPError as e:
        logger.error(f"Gateway order creation failed for receipt {receipt}: {e}")
        raise UpstreamFailure("Payment gateway unavailable, please retry") from e


async def refund_payment(payment_id: str, amount: Decimal, notes: Optional[dict] = None) -> dict:
    """
    Refund a captured payment, fully or partially.

    Returns:
        Gateway refund data; ``id`` is the refund id

    Raises:
        UpstreamFailure: If the gateway is unreachable, times out or rejects the refund
    """
    payload = {"amount": to_minor_units(amount), "notes": notes or {}}
    try:
        async with _client() as client:
            response = await client.post(f"/payments/{payment_id}/refund", json=payload)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPError as e:
        logger.error(f"Gateway refund failed for payment {payment_id}: {e}")
        raise UpstreamFailure("Payment gateway refund failed, please retry") from e
