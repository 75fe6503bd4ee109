"""
HTTP client for communicating with the Cart service.
"""
import logging

import httpx

from .. import config

logger = logging.getLogger(__name__)


async def clear_cart(user_id: int, token: str) -> bool:
    """
    Empty a user's cart after checkout.

    Args:
        user_id: Owner of the cart
        token: The user's bearer token, forwarded to the Cart service

    Returns:
        True if the cart was cleared, False otherwise (errors are logged)
    """
    try:
        async with httpx.AsyncClient(timeout=config.SERVICE_TIMEOUT) as client:
            response = await client.delete(
                f"{config.CART_SERVICE_URL}/cart",
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to clear cart for user {user_id}: {e}")
        return False
