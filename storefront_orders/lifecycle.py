"""
Order state machine: fulfillment, cancellation and tracking.

Every transition is a compare-and-swap on the current status, so two concurrent
requests cannot both move the same order (and a cancellation releases stock
exactly once).
"""
import logging
from datetime import timedelta, timezone
from typing import List, Optional
from urllib.parse import quote_plus

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, config, crud, inventory, models, notifications, promotions, schemas, validators
from .auth import CurrentUser
from .clients import gateway_client
from .errors import InvalidTransition, PermissionDenied, UpstreamFailure
from .models import OrderStatus, PaymentMethod, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

CARRIER_TRACKING_URLS = {
    "fedex": "https://www.fedex.com/apps/fedextrack/?tracknumbers={number}",
    "ups": "https://www.ups.com/track?tracknum={number}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1={number}",
    "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={number}",
}


def tracking_url_for(carrier: str, tracking_number: str) -> str:
    """Carrier tracking page, or a web search for carriers we do not know."""
    template = CARRIER_TRACKING_URLS.get(carrier.strip().lower())
    if template:
        return template.format(number=quote_plus(tracking_number))
    return f"https://www.google.com/search?q={quote_plus(tracking_number + ' tracking')}"


def transition(
    db: Session,
    order: models.Order,
    new_status: OrderStatus,
    actor_id: Optional[int] = None,
    note: Optional[str] = None,
    **values,
) -> OrderStatus:
    """
    Move an order along one edge of the state machine.

    Args:
        db: Database session
        order: Order to move
        new_status: Target status
        actor_id: User performing the change
        note: History note
        **values: Extra columns to set in the same update

    Returns:
        The previous status

    Raises:
        InvalidTransition: If the edge is not allowed or the order changed concurrently
    """
    old_status = OrderStatus(order.status)
    is_valid, error_message = validators.validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise InvalidTransition(error_message)

    stmt = (
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.status == old_status)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    try:
        if db.execute(stmt).rowcount != 1:
            db.rollback()
            raise InvalidTransition(f"Order {order.order_number} was modified concurrently, please retry")
        crud.add_history(db, order, new_status, note=note, previous_status=old_status, actor_id=actor_id, commit=False)
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Order {order.order_number}: {old_status.value} -> {new_status.value}")
    return old_status


def _announce(order: models.Order, action: str, actor_id: Optional[int], old_status: OrderStatus, note: Optional[str]) -> None:
    try:
        audit.log(action, actor_id, order.id, {"from": old_status.value, "to": OrderStatus(order.status).value, "note": note})
        notifications.send_order_status_update(order, order.status, note=note)
    except Exception:
        logger.exception(f"Status change side effects failed for order {order.order_number}")


def stock_lines_for(order: models.Order) -> List[inventory.StockLine]:
    return [
        inventory.StockLine(item["product_id"], item["variant"]["size"], item["variant"]["color_name"], item["quantity"])
        for item in order.items
    ]


async def update_status(
    db: Session,
    order: models.Order,
    new_status: OrderStatus,
    actor: CurrentUser,
    note: Optional[str] = None,
) -> models.Order:
    """
    Admin status change along the fulfillment path.

    ``shipped`` stamps ``shipped_at`` and ``delivered`` stamps ``delivered_at``.
    A change to ``cancelled`` goes through the full cancellation.

    Raises:
        InvalidTransition: For edges outside the state machine, including
            ``returned`` which only the return workflow can reach
    """
    new_status = OrderStatus(new_status)
    if new_status == OrderStatus.CANCELLED:
        return await cancel_order(db, order, actor, reason=note)
    if new_status == OrderStatus.RETURNED:
        raise InvalidTransition("Orders become returned through the return workflow")

    values = {}
    if new_status == OrderStatus.SHIPPED:
        values["shipped_at"] = utcnow()
    elif new_status == OrderStatus.DELIVERED:
        values["delivered_at"] = utcnow()

    old_status = transition(db, order, new_status, actor_id=actor.id, note=note, **values)
    _announce(order, "order.status_updated", actor.id, old_status, note)
    return order


async def cancel_order(
    db: Session,
    order: models.Order,
    actor: CurrentUser,
    reason: Optional[str] = None,
) -> models.Order:
    """
    Cancel an order that has not shipped yet.

    Releases the reserved stock of every item and gives back promo usage. A paid
    gateway order is refunded in full; if the gateway cannot be reached the
    cancellation stands and the failure is noted in the history for manual
    follow-up.

    Args:
        db: Database session
        order: Order to cancel
        actor: Owner of the order, or an admin
        reason: Cancellation reason

    Raises:
        PermissionDenied: If the actor neither owns the order nor is an admin
        InvalidTransition: If the order already shipped, or a paid order is past
            the cancellation window
    """
    if not actor.is_admin and order.user_id != actor.id:
        raise PermissionDenied("Not authorized to cancel this order")

    if OrderStatus(order.status) not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
        if order.status == OrderStatus.DELIVERED:
            raise InvalidTransition("Order has been delivered. Please initiate a return instead.")
        raise InvalidTransition(f"Order cannot be cancelled once it is {OrderStatus(order.status).value}")

    paid_online = (
        order.payment_method == PaymentMethod.GATEWAY
        and order.payment_status == PaymentStatus.COMPLETED
    )
    if paid_online and not actor.is_admin:
        window = timedelta(hours=config.PAID_CANCELLATION_WINDOW_HOURS)
        if utcnow() - order.created_at > window:
            raise InvalidTransition(
                f"Paid orders can only be cancelled within {config.PAID_CANCELLATION_WINDOW_HOURS} hours of placement"
            )

    note = f"Cancelled: {reason}" if reason else "Order cancelled"
    old_status = transition(db, order, OrderStatus.CANCELLED, actor_id=actor.id, note=note)

    inventory.release_all(db, stock_lines_for(order))
    promotions.restore_usage(db, order)

    if paid_online and order.payment_transaction_id:
        await refund_cancelled_order(db, order, actor.id)

    db.refresh(order)
    _announce(order, "order.cancelled", actor.id, old_status, note)
    return order


async def refund_cancelled_order(db: Session, order: models.Order, actor_id: Optional[int]) -> None:
    """Full gateway refund for a cancelled paid order; failures are recorded, not raised."""
    try:
        refund = await gateway_client.refund_payment(
            order.payment_transaction_id,
            order.total,
            notes={"order_number": order.order_number, "reason": "order_cancelled"},
        )
    except UpstreamFailure as e:
        logger.error(f"Automatic refund failed for cancelled order {order.order_number}: {e}")
        crud.add_history(
            db, order, OrderStatus.CANCELLED,
            note="Automatic refund failed; manual refund required",
            actor_id=actor_id,
        )
        return

    order.payment_status = PaymentStatus.REFUNDED
    order.refunded_amount = order.total
    order.refunded_at = utcnow()
    order.refund_transaction_id = refund.get("id")
    order.refund_method = "gateway"
    crud.add_history(db, order, OrderStatus.CANCELLED, note=f"Refund {refund.get('id')} issued", actor_id=actor_id)
    logger.info(f"Refunded {order.total} for cancelled order {order.order_number}")


def update_tracking(
    db: Session,
    order: models.Order,
    tracking: schemas.TrackingUpdate,
    actor: CurrentUser,
) -> models.Order:
    """
    Set carrier, tracking number and estimated delivery, generating the tracking URL.

    Raises:
        InvalidTransition: If the order is cancelled or returned
    """
    if order.status in (OrderStatus.CANCELLED, OrderStatus.RETURNED):
        raise InvalidTransition(f"Cannot add tracking to a {OrderStatus(order.status).value} order")

    order.carrier = tracking.carrier
    order.tracking_number = tracking.tracking_number
    order.tracking_url = tracking_url_for(tracking.carrier, tracking.tracking_number)
    if tracking.estimated_delivery is not None:
        eta = tracking.estimated_delivery
        if eta.tzinfo is not None:
            eta = eta.astimezone(timezone.utc).replace(tzinfo=None)
        order.estimated_delivery = eta
    db.commit()
    db.refresh(order)

    audit.log(
        "order.tracking_updated", actor.id, order.id,
        {"carrier": tracking.carrier, "tracking_number": tracking.tracking_number},
    )
    return order
