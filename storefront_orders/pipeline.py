"""
Order creation pipeline.

Validate -> price -> reserve stock -> persist -> side effects. Stock is reserved
with compensating rollback, so an order that fails at any step before it is
persisted leaves inventory exactly as it found it. Side effects run after the
order is committed and can never fail the order.
"""
import logging
import secrets
from typing import Any, Callable, List, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit, config, counters, crud, inventory, models, notifications, pricing, promotions, schemas, validators
from .auth import CurrentUser
from .clients import cart_client, gateway_client
from .errors import DuplicateGatewayOrder, InsufficientStock, ProductUnavailable, ValidationError, VariantNotFound
from .models import OrderStatus, PaymentMethod, PaymentStatus, ProductStatus, utcnow
from .promotions import PromoApplication

logger = logging.getLogger(__name__)


class SettledPayment(NamedTuple):
    """A gateway payment already verified before the order exists (client callback)."""
    gateway_order_id: str
    gateway_payment_id: str


class ResolvedLine(NamedTuple):
    product: models.Product
    variant: models.ProductVariant
    quantity: int

    @property
    def unit_price(self):
        return pricing.to_money(self.product.effective_price)

    def snapshot(self) -> dict:
        return {
            "product_id": self.product.id,
            "product_name": self.product.name,
            "product_image": self.product.image_url,
            "variant": {
                "size": self.variant.size,
                "color_name": self.variant.color_name,
                "color_hex": self.variant.color_hex,
                "sku": self.variant.sku,
            },
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "line_total": str(pricing.to_money(self.unit_price * self.quantity)),
        }

    def stock_line(self) -> inventory.StockLine:
        return inventory.StockLine(self.product.id, self.variant.size, self.variant.color_name, self.quantity)


def resolve_items(db: Session, items: List[schemas.OrderItemIn]) -> List[ResolvedLine]:
    """
    Validate the requested lines and resolve them against the catalog.

    Raises:
        ValidationError: If the item list breaks a shape rule
        ProductUnavailable: If a product does not exist or is not active
        VariantNotFound: If no variant matches the size and color
        InsufficientStock: If a variant has fewer units than requested
    """
    is_valid, error_message = validators.validate_order_items(items)
    if not is_valid:
        raise ValidationError(error_message)

    resolved = []
    for item in items:
        product = db.get(models.Product, item.product_id)
        if product is None or product.status != ProductStatus.ACTIVE:
            raise ProductUnavailable(f"Product {item.product_id} is not available")

        variant = inventory.get_variant(db, item.product_id, item.size, item.color)
        if variant is None:
            raise VariantNotFound(f"{product.name} is not available in size {item.size} / {item.color}")

        if variant.stock < item.quantity:
            raise InsufficientStock(
                f"Insufficient stock for {product.name} ({item.size}/{item.color}). "
                f"Available: {variant.stock}, Requested: {item.quantity}"
            )
        resolved.append(ResolvedLine(product, variant, item.quantity))
    return resolved


def quote(
    db: Session,
    lines: List[ResolvedLine],
    shipping_method: str,
    promo_code: Optional[str],
    user_id: Optional[int],
) -> tuple:
    """
    Price resolved lines, applying a promo code if one was given.

    Returns:
        Tuple of (PriceBreakdown, PromoApplication or None)
    """
    application: Optional[PromoApplication] = None
    if promo_code:
        subtotal = pricing.to_money(sum((line.unit_price * line.quantity for line in lines), 0))
        application = promotions.evaluate(
            db,
            promo_code,
            user_id,
            subtotal,
            [(line.product.id, line.product.category_id) for line in lines],
        )

    breakdown = pricing.price(
        [(line.unit_price, line.quantity) for line in lines],
        shipping_method=shipping_method,
        discount=application.discount_amount if application else 0,
        discount_code=application.code if application else None,
        discount_type=application.discount_type if application else models.DiscountType.NONE,
    )
    return breakdown, application


def check_gateway_order(
    db: Session,
    gateway_order_id: str,
    user_id: Optional[int],
    total,
) -> models.GatewayOrder:
    """
    Match a gateway order against the order about to be created for it.

    Only gateway orders opened by create-payment for the same user, not yet used
    by another order and opened for exactly this total are accepted.

    Raises:
        ValidationError: If the gateway order is unknown, belongs to someone
            else or was opened for a different amount
        DuplicateGatewayOrder: If an order already exists for it
    """
    gateway_order = crud.get_gateway_order(db, gateway_order_id)
    if gateway_order is None or gateway_order.user_id != user_id:
        raise ValidationError("Unknown gateway order")
    if gateway_order.order_id is not None:
        raise DuplicateGatewayOrder(f"An order for gateway order {gateway_order_id} already exists")
    if gateway_client.to_minor_units(total) != gateway_order.amount_minor:
        logger.warning(
            f"Gateway order {gateway_order_id} was opened for {gateway_order.amount_minor}, "
            f"order total is {total}"
        )
        raise ValidationError("Order total does not match the amount paid")
    return gateway_order


def _side_effect(description: str, func: Callable, *args: Any, **kwargs: Any) -> None:
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception(f"{description} failed")


def create_order(
    db: Session,
    order_in: schemas.OrderCreate,
    user: Optional[CurrentUser] = None,
    payment: Optional[SettledPayment] = None,
) -> models.Order:
    """
    Turn a checkout request into a durable order.

    Args:
        db: Database session
        order_in: Checkout data; any pricing is recomputed here
        user: Authenticated customer, None for guest checkout
        payment: Gateway payment verified before the order exists; the order is
            then created confirmed and paid

    Returns:
        The persisted order

    Raises:
        ValidationError, ProductUnavailable, VariantNotFound, InsufficientStock:
            Nothing was reserved or persisted
        DuplicateGatewayOrder: An order for the gateway order id already exists;
            this call's reservations have been released
    """
    if user is None and not order_in.email:
        raise ValidationError("Email is required for guest checkout")

    gateway_order_id = None
    if order_in.payment_method == PaymentMethod.GATEWAY:
        gateway_order_id = payment.gateway_order_id if payment else order_in.gateway_order_id
        if not gateway_order_id:
            raise ValidationError("gateway_order_id is required for gateway payments")
    elif payment is not None:
        raise ValidationError("A settled gateway payment cannot be attached to a cash on delivery order")

    lines = resolve_items(db, order_in.items)
    user_id = user.id if user else None
    breakdown, application = quote(db, lines, order_in.shipping_method, order_in.promo_code, user_id)

    gateway_order = None
    if gateway_order_id:
        gateway_order = check_gateway_order(db, gateway_order_id, user_id, breakdown.total)

    stock_lines = [line.stock_line() for line in lines]
    remaining = inventory.reserve_all(db, stock_lines)

    if order_in.payment_method == PaymentMethod.COD:
        status, payment_status = OrderStatus.CONFIRMED, PaymentStatus.PENDING
    elif payment is not None:
        status, payment_status = OrderStatus.CONFIRMED, PaymentStatus.COMPLETED
    else:
        status, payment_status = OrderStatus.PENDING, PaymentStatus.PENDING

    shipping_address = order_in.shipping_address.model_dump()
    billing_address = order_in.billing_address.model_dump() if order_in.billing_address else shipping_address

    try:
        order = models.Order(
            order_number=crud.next_order_number(db),
            user_id=user_id,
            is_guest=user is None,
            guest_email=order_in.email if user is None else None,
            tracking_token=secrets.token_hex(32) if user is None else None,
            items=[line.snapshot() for line in lines],
            subtotal=breakdown.subtotal,
            shipping_cost=breakdown.shipping_cost,
            shipping_method=breakdown.shipping_method,
            tax=breakdown.tax,
            discount_amount=breakdown.discount_amount,
            discount_code=breakdown.discount_code,
            discount_type=breakdown.discount_type,
            promo_code_id=application.promo_id if application else None,
            total=breakdown.total,
            shipping_address=shipping_address,
            billing_address=billing_address,
            special_instructions=order_in.special_instructions,
            payment_method=order_in.payment_method,
            payment_status=payment_status,
            payment_transaction_id=payment.gateway_payment_id if payment else None,
            gateway_order_id=gateway_order_id,
            paid_at=utcnow() if payment else None,
            status=status,
        )
        db.add(order)
        db.flush()
        if gateway_order is not None:
            gateway_order.order_id = order.id
        crud.add_history(db, order, status, note="Order placed", actor_id=user_id, commit=False)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Persisting order failed, releasing {len(stock_lines)} reservations: {e}")
        inventory.release_all(db, stock_lines)
        if isinstance(e, IntegrityError) and gateway_order_id:
            raise DuplicateGatewayOrder(f"An order for gateway order {gateway_order_id} already exists") from e
        raise

    order_id, order_number = order.id, order.order_number
    logger.info(f"Order {order_number} created ({status.value}, total {breakdown.total})")

    for line, left in zip(lines, remaining):
        if left is not None and left <= config.LOW_STOCK_THRESHOLD:
            _side_effect("Low stock alert", notifications.send_low_stock_alert, line.variant, left)

    if application:
        promotions.record_usage(db, application, user_id, order_id)

    for line in lines:
        counters.record_sale(db, line.product.id, line.quantity, line.unit_price * line.quantity)

    if user is not None:
        _side_effect(
            f"Cart clear for user {user.id}",
            notifications.fire_and_forget,
            cart_client.clear_cart(user.id, user.token),
        )

    db.refresh(order)
    _side_effect(
        f"Confirmation for order {order_number}",
        notifications.send_order_confirmation,
        order,
        email=user.email if user else order_in.email,
    )
    _side_effect(
        f"Audit of order {order_number}",
        audit.log,
        "order.created",
        user_id,
        order_id,
        {"total": str(breakdown.total), "payment_method": order_in.payment_method.value},
    )
    return order
