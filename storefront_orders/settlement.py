"""
Payment settlement coordinator.

Two channels confirm a gateway payment: the customer's browser calling back after
checkout, and the gateway's own webhook. They can arrive in any order, any number
of times. Both are HMAC-SHA256 authenticated and both converge on
``apply_settlement``, a compare-and-swap keyed by the gateway order id, so the
first one wins and every later one is a no-op.
"""
import hashlib
import hmac
import json
import logging
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import audit, config, crud, lifecycle, models, notifications, pipeline, schemas
from .auth import CurrentUser
from .clients import gateway_client
from .database import SessionLocal
from .errors import DuplicateGatewayOrder, SignatureInvalid, ValidationError
from .models import OrderStatus, PaymentMethod, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

# Settlement outcomes
APPLIED = "applied"
ALREADY_SETTLED = "already_settled"
NO_ORDER = "no_order"
PAYMENT_FAILED = "payment_failed"
IGNORED = "ignored"

SETTLED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)
SETTLEMENT_EVENTS = ("payment.captured", "order.paid")


def compute_signature(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: Union[str, bytes], signature: Optional[str]) -> bool:
    """
    Check a hex HMAC-SHA256 signature in constant time.

    An unset secret or a missing signature never verifies.
    """
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, message), signature)


def apply_settlement(
    db: Session,
    gateway_order_id: str,
    payment_id: Optional[str] = None,
    source: str = "webhook",
    actor_id: Optional[int] = None,
    amount_minor: Optional[int] = None,
) -> str:
    """
    Mark the order for a gateway order id as paid, exactly once.

    The payment status moves to ``completed`` only if it is not already settled,
    and a ``pending`` order moves to ``confirmed`` in the same transaction.
    Inventory is never touched: stock was reserved when the order was created.
    A capture for an order cancelled in the meantime is refunded.

    Args:
        db: Database session
        gateway_order_id: Idempotency key shared by both settlement channels
        payment_id: Gateway payment id, recorded as the transaction id
        source: Channel name for history and logs ("webhook" or "callback")
        actor_id: User behind the settlement, None for the gateway
        amount_minor: Captured amount in minor units, checked against the order total

    Returns:
        APPLIED, ALREADY_SETTLED or NO_ORDER

    Raises:
        ValidationError: If the captured amount differs from the order total
    """
    if amount_minor is not None:
        existing = crud.get_order_by_gateway_order_id(db, gateway_order_id)
        if existing is not None and amount_minor != gateway_client.to_minor_units(existing.total):
            logger.warning(
                f"Gateway order {gateway_order_id}: captured {amount_minor}, "
                f"order {existing.order_number} total is {existing.total}"
            )
            raise ValidationError("Payment amount does not match the order total")

    values = {"payment_status": PaymentStatus.COMPLETED, "paid_at": utcnow()}
    if payment_id:
        values["payment_transaction_id"] = payment_id

    settle = (
        update(models.Order)
        .where(
            models.Order.gateway_order_id == gateway_order_id,
            models.Order.payment_status.notin_(SETTLED_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    confirm = (
        update(models.Order)
        .where(
            models.Order.gateway_order_id == gateway_order_id,
            models.Order.status == OrderStatus.PENDING,
        )
        .values(status=OrderStatus.CONFIRMED)
        .execution_options(synchronize_session=False)
    )

    try:
        if db.execute(settle).rowcount != 1:
            db.rollback()
            if crud.get_order_by_gateway_order_id(db, gateway_order_id) is None:
                logger.info(f"Settlement via {source} for unknown gateway order {gateway_order_id}")
                return NO_ORDER
            logger.info(f"Gateway order {gateway_order_id} already settled, {source} ignored")
            return ALREADY_SETTLED

        confirmed = db.execute(confirm).rowcount == 1
        order = crud.get_order_by_gateway_order_id(db, gateway_order_id)
        if confirmed:
            crud.add_history(
                db, order, OrderStatus.CONFIRMED,
                note=f"Payment confirmed via {source}",
                previous_status=OrderStatus.PENDING,
                actor_id=actor_id,
                commit=False,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Order {order.order_number} settled via {source} (payment {payment_id})")
    if order.status == OrderStatus.CANCELLED:
        logger.warning(f"Payment captured for cancelled order {order.order_number}, refunding")
        crud.add_history(
            db, order, OrderStatus.CANCELLED,
            note=f"Payment {payment_id} captured after cancellation; refund requested",
            previous_status=OrderStatus.CANCELLED,
            actor_id=actor_id,
        )

    try:
        audit.log("payment.settled", actor_id, order.id, {"source": source, "payment_id": payment_id})
        if confirmed:
            notifications.send_order_status_update(order, OrderStatus.CONFIRMED, note="Payment confirmed")
        if order.status == OrderStatus.CANCELLED:
            notifications.fire_and_forget(refund_late_capture(order.id))
    except Exception:
        logger.exception(f"Settlement side effects failed for order {order.order_number}")
    return APPLIED


async def refund_late_capture(order_id: str) -> None:
    """Refund a payment captured for an order that was already cancelled, in its own session."""
    db = SessionLocal()
    try:
        order = crud.get_order(db, order_id)
        if not order.payment_transaction_id:
            logger.error(f"Cannot refund cancelled order {order.order_number}: no payment id recorded")
            return
        await lifecycle.refund_cancelled_order(db, order, None)
    finally:
        db.close()


def mark_payment_failed(db: Session, gateway_order_id: str, reason: Optional[str] = None) -> str:
    """
    Record a failed payment attempt on an order that is still awaiting payment.

    Returns:
        PAYMENT_FAILED, ALREADY_SETTLED or NO_ORDER
    """
    stmt = (
        update(models.Order)
        .where(
            models.Order.gateway_order_id == gateway_order_id,
            models.Order.payment_status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
        )
        .values(payment_status=PaymentStatus.FAILED)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        if result.rowcount != 1:
            db.rollback()
            if crud.get_order_by_gateway_order_id(db, gateway_order_id) is None:
                return NO_ORDER
            return ALREADY_SETTLED

        order = crud.get_order_by_gateway_order_id(db, gateway_order_id)
        crud.add_history(
            db, order, OrderStatus(order.status),
            note=f"Payment failed: {reason or 'no reason given'}",
            previous_status=OrderStatus(order.status),
            commit=False,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Payment for gateway order {gateway_order_id} failed: {reason}")
    return PAYMENT_FAILED


def settle_client_callback(
    db: Session,
    callback: schemas.VerifyPaymentRequest,
    user: Optional[CurrentUser] = None,
) -> models.Order:
    """
    Verify the browser's post-checkout callback and create (or converge on) the order.

    Args:
        db: Database session
        callback: Gateway ids, signature and the checkout data
        user: Authenticated customer, None for guest checkout

    Returns:
        The order for the gateway order id, created by this call or an earlier one

    Raises:
        SignatureInvalid: If the signature does not match; nothing is created
    """
    message = f"{callback.gateway_order_id}|{callback.gateway_payment_id}"
    if not verify_signature(config.GATEWAY_KEY_SECRET, message, callback.signature):
        logger.warning(f"Rejected payment callback for gateway order {callback.gateway_order_id}: bad signature")
        raise SignatureInvalid()

    actor_id = user.id if user else None
    existing = crud.get_order_by_gateway_order_id(db, callback.gateway_order_id)
    if existing is not None:
        apply_settlement(db, callback.gateway_order_id, callback.gateway_payment_id, source="callback", actor_id=actor_id)
        db.refresh(existing)
        return existing

    order_in = callback.order_data.model_copy(update={
        "payment_method": PaymentMethod.GATEWAY,
        "gateway_order_id": callback.gateway_order_id,
    })
    payment = pipeline.SettledPayment(callback.gateway_order_id, callback.gateway_payment_id)
    try:
        return pipeline.create_order(db, order_in, user, payment=payment)
    except DuplicateGatewayOrder:
        # Lost the race to a concurrent callback; our reservations are already released
        logger.info(f"Gateway order {callback.gateway_order_id} created concurrently, converging")
        apply_settlement(db, callback.gateway_order_id, callback.gateway_payment_id, source="callback", actor_id=actor_id)
        return crud.get_order_by_gateway_order_id(db, callback.gateway_order_id)


def _entity(event: dict, name: str) -> dict:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


def handle_webhook(db: Session, raw_body: bytes, signature: Optional[str]) -> str:
    """
    Process a gateway webhook delivery.

    The signature is checked over the raw request body before anything is parsed.

    Args:
        db: Database session
        raw_body: Request body exactly as received
        signature: Value of the signature header

    Returns:
        Settlement outcome; IGNORED for events this service does not act on

    Raises:
        SignatureInvalid: If the signature does not match
        ValidationError: If the verified body is not a JSON object
    """
    if not verify_signature(config.GATEWAY_WEBHOOK_SECRET, raw_body, signature):
        logger.warning("Rejected webhook delivery: bad signature")
        raise SignatureInvalid()

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Malformed webhook payload")
    if not isinstance(event, dict):
        raise ValidationError("Malformed webhook payload")

    event_type = event.get("event")
    payment = _entity(event, "payment")
    gateway_order_id = payment.get("order_id") or _entity(event, "order").get("id")

    if event_type not in SETTLEMENT_EVENTS and event_type != "payment.failed":
        logger.info(f"Ignoring webhook event {event_type}")
        return IGNORED
    if not gateway_order_id:
        logger.warning(f"Webhook event {event_type} carries no gateway order id")
        return IGNORED

    if event_type == "payment.failed":
        return mark_payment_failed(db, gateway_order_id, payment.get("error_description"))

    amount = payment.get("amount")
    if amount is None:
        amount = _entity(event, "order").get("amount_paid")
    if amount is not None and not isinstance(amount, int):
        raise ValidationError("Malformed webhook payload")
    return apply_settlement(db, gateway_order_id, payment.get("id"), source="webhook", amount_minor=amount)
