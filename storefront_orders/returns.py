"""
Return/refund state machine.

A customer may request a return once per delivered order, within the return
window. Admins then walk the request through approved/rejected -> received ->
processed; processing records the refund and moves the order to ``returned``.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, config, crud, models, notifications, schemas, validators
from .auth import CurrentUser
from .errors import InvalidTransition, PermissionDenied, ValidationError
from .models import OrderStatus, PaymentMethod, PaymentStatus, ReturnStatus, utcnow

logger = logging.getLogger(__name__)


def normalize_refund_destination(destination: schemas.RefundDestinationIn) -> dict:
    data = destination.model_dump(exclude_none=True)
    if destination.method == "bank_transfer":
        data["ifsc_code"] = destination.ifsc_code.strip().upper()
        data["account_number"] = destination.account_number.strip()
    else:
        data["upi_id"] = destination.upi_id.strip().lower()
    return data


def days_since_delivery(order: models.Order) -> int:
    """Whole days since delivery; orders delivered before ``delivered_at`` existed fall back to ``updated_at``."""
    delivered_at = order.delivered_at or order.updated_at
    return (utcnow() - delivered_at).days


def request_return(
    db: Session,
    order: models.Order,
    user: CurrentUser,
    request: schemas.ReturnRequest,
) -> models.Order:
    """
    Open a return request on a delivered order.

    Args:
        db: Database session
        order: Order to return
        user: Requesting customer; must own the order
        request: Reason, comments and (for cash on delivery) the refund destination

    Returns:
        The updated order

    Raises:
        PermissionDenied: If the user does not own the order
        InvalidTransition: If the order is not delivered or a return was already requested
        ValidationError: If the window has passed or the refund destination is invalid
    """
    if order.user_id != user.id:
        raise PermissionDenied("Not authorized to return this order")

    if order.status != OrderStatus.DELIVERED:
        raise InvalidTransition("Only delivered orders can be returned")

    if order.return_requested:
        raise InvalidTransition("A return has already been requested for this order")

    if days_since_delivery(order) > config.RETURN_WINDOW_DAYS:
        raise ValidationError(f"Return window of {config.RETURN_WINDOW_DAYS} days has expired")

    reason = request.reason.strip()
    if not reason:
        raise ValidationError("Return reason is required")

    destination = None
    if order.payment_method == PaymentMethod.COD:
        is_valid, error_message = validators.validate_refund_destination(request.refund_destination)
        if not is_valid:
            raise ValidationError(error_message)
        destination = normalize_refund_destination(request.refund_destination)

    stmt = (
        update(models.Order)
        .where(
            models.Order.id == order.id,
            models.Order.status == OrderStatus.DELIVERED,
            models.Order.return_requested.is_(False),
        )
        .values(
            return_requested=True,
            return_reason=reason,
            return_comments=request.comments,
            return_status=ReturnStatus.REQUESTED,
            return_requested_at=utcnow(),
            refund_destination=destination,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        if db.execute(stmt).rowcount != 1:
            db.rollback()
            raise InvalidTransition("A return has already been requested for this order")
        crud.add_history(
            db, order, OrderStatus.DELIVERED,
            note=f"Return requested: {reason}",
            previous_status=OrderStatus.DELIVERED,
            actor_id=user.id,
            commit=False,
        )
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Return requested for order {order.order_number}")
    try:
        audit.log("return.requested", user.id, order.id, {"reason": reason})
        notifications.send_order_status_update(order, order.status, note="Return requested")
    except Exception:
        logger.exception(f"Return request side effects failed for order {order.order_number}")
    return order


def update_return_status(
    db: Session,
    order: models.Order,
    change: schemas.ReturnStatusUpdate,
    actor: CurrentUser,
) -> models.Order:
    """
    Admin step of the return workflow.

    ``processed`` needs a refund amount in ``(0, total]`` and, for cash on
    delivery, the refund transaction (UTR) id. It records the refund on the
    payment and moves the order to ``returned``.

    Raises:
        InvalidTransition: If no return was requested or the step is out of order
        ValidationError: If the refund data is missing or out of range
    """
    if not order.return_requested:
        raise InvalidTransition("No return has been requested for this order")

    old_status = ReturnStatus(order.return_status)
    new_status = ReturnStatus(change.status)
    is_valid, error_message = validators.validate_return_transition(old_status, new_status)
    if not is_valid:
        raise InvalidTransition(error_message)

    values = {"return_status": new_status}
    if change.admin_notes is not None:
        values["return_admin_notes"] = change.admin_notes

    history_status, history_note = OrderStatus(order.status), f"Return {new_status.value}"
    if new_status == ReturnStatus.PROCESSED:
        amount: Optional[Decimal] = change.refund_amount
        if amount is None or amount <= 0:
            raise ValidationError("Valid refund amount is required")
        if amount > order.total:
            raise ValidationError(f"Refund amount cannot exceed order total of ₹{order.total}")

        is_cod = order.payment_method == PaymentMethod.COD
        if is_cod and not change.refund_transaction_id:
            raise ValidationError("Transaction ID/UTR number is required for COD refund confirmation")

        if is_cod:
            refund_method = (order.refund_destination or {}).get("method", "manual")
        else:
            refund_method = "gateway"
        values.update(
            status=OrderStatus.RETURNED,
            payment_status=PaymentStatus.REFUNDED,
            refunded_amount=amount,
            refunded_at=utcnow(),
            refund_transaction_id=change.refund_transaction_id,
            refund_method=refund_method,
        )
        history_status, history_note = OrderStatus.RETURNED, f"Return processed, refunded ₹{amount}"

    stmt = (
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.return_status == old_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        if db.execute(stmt).rowcount != 1:
            db.rollback()
            raise InvalidTransition(f"Return for order {order.order_number} was modified concurrently, please retry")
        crud.add_history(
            db, order, history_status,
            note=history_note,
            previous_status=OrderStatus(order.status),
            actor_id=actor.id,
            commit=False,
        )
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Return for order {order.order_number}: {old_status.value} -> {new_status.value}")
    try:
        audit.log(
            "return.status_updated", actor.id, order.id,
            {"from": old_status.value, "to": new_status.value, "refund_amount": change.refund_amount},
        )
        notifications.send_order_status_update(order, order.status, note=history_note)
    except Exception:
        logger.exception(f"Return update side effects failed for order {order.order_number}")
    return order


def list_returns(
    db: Session,
    return_status: Optional[ReturnStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    return crud.get_return_requests(db, return_status=return_status, skip=skip, limit=limit)
