"""
Business rule validation for the Orders service.

Provides validation beyond schema validation: order line rules, the allowed
status edges of the order and return state machines, and refund destination
formats. Each validator returns ``(is_valid, error_message)``.
"""
import re
from typing import Dict, List, Optional, Tuple

from . import schemas
from .models import OrderStatus, ReturnStatus

MAX_ORDER_LINES = 100
MAX_LINE_QUANTITY = 10000

ACCOUNT_NUMBER_RE = re.compile(r"^\d{9,18}$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
UPI_RE = re.compile(r"^[\w.-]+@[\w.-]+$")

# Allowed order status edges. DELIVERED -> RETURNED belongs to the return workflow
# and is not reachable through a plain status update.
ORDER_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED],
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],  # Terminal state
    OrderStatus.RETURNED: [],  # Terminal state
}

RETURN_TRANSITIONS: Dict[ReturnStatus, List[ReturnStatus]] = {
    ReturnStatus.NONE: [ReturnStatus.REQUESTED],
    ReturnStatus.REQUESTED: [ReturnStatus.APPROVED, ReturnStatus.REJECTED],
    ReturnStatus.APPROVED: [ReturnStatus.RECEIVED],
    ReturnStatus.RECEIVED: [ReturnStatus.PROCESSED],
    ReturnStatus.REJECTED: [],
    ReturnStatus.PROCESSED: [],
}


def validate_order_items(items: List[schemas.OrderItemIn]) -> Tuple[bool, str]:
    """
    Validate order lines for business rules.

    Args:
        items: List of requested order lines

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ORDER_LINES:
        return False, f"Order cannot contain more than {MAX_ORDER_LINES} items"

    # One line per variant
    keys = [(item.product_id, item.size, item.color) for item in items]
    if len(keys) != len(set(keys)):
        return False, "Order contains duplicate product variants"

    for item in items:
        if item.quantity <= 0:
            return False, f"Product {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Product {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_order_status_transition(old_status: OrderStatus, new_status: OrderStatus) -> Tuple[bool, str]:
    """
    Validate that an order status transition is allowed.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    allowed = ORDER_TRANSITIONS.get(OrderStatus(old_status), [])
    if not allowed:
        return False, f"Order is {OrderStatus(old_status).value} and accepts no further status changes"

    if OrderStatus(new_status) not in allowed:
        return False, f"Invalid status transition: {OrderStatus(old_status).value} -> {OrderStatus(new_status).value}"

    return True, ""


def validate_return_transition(old_status: ReturnStatus, new_status: ReturnStatus) -> Tuple[bool, str]:
    """Validate a return workflow transition; same contract as the order check."""
    if ReturnStatus(new_status) not in RETURN_TRANSITIONS.get(ReturnStatus(old_status), []):
        return False, (
            f"Invalid return status transition: {ReturnStatus(old_status).value} -> {ReturnStatus(new_status).value}"
        )
    return True, ""


def validate_refund_destination(destination: Optional[schemas.RefundDestinationIn]) -> Tuple[bool, str]:
    """
    Validate a cash-on-delivery refund destination.

    Bank transfers need holder name, a 9-18 digit account number, an IFSC code
    (4 letters, a zero, 6 alphanumerics) and the bank name. UPI needs an id
    shaped like ``local@handle``.

    Args:
        destination: Destination supplied with the return request

    Returns:
        Tuple of (is_valid, error_message)
    """
    if destination is None:
        return False, "Refund details are required for cash on delivery orders"

    if destination.method == "bank_transfer":
        required = ["account_holder_name", "account_number", "ifsc_code", "bank_name"]
        missing = [field for field in required if not getattr(destination, field)]
        if missing:
            return False, f"Missing bank details: {', '.join(missing)}"

        if not ACCOUNT_NUMBER_RE.match(destination.account_number):
            return False, "Invalid account number format"

        if not IFSC_RE.match(destination.ifsc_code.strip().upper()):
            return False, "Invalid IFSC code format"

    elif destination.method == "upi":
        if not destination.upi_id:
            return False, "UPI ID is required"

        if not UPI_RE.match(destination.upi_id.strip()):
            return False, "Invalid UPI ID format"

    return True, ""
