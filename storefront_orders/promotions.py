"""
Promo code evaluation and usage bookkeeping.

A promo is evaluated against the server-side subtotal before pricing. Usage is
recorded only once the order exists, with an atomic conditional increment of
the global counter; cancelling the order gives the usage back.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models
from .errors import ValidationError
from .models import DiscountType, OrderStatus, utcnow
from .pricing import to_money

logger = logging.getLogger(__name__)


@dataclass
class PromoApplication:
    promo_id: int
    code: str
    discount_type: DiscountType
    discount_amount: Decimal


def normalize_code(code: str) -> str:
    return code.strip().upper()


def get_promo(db: Session, code: str) -> Optional[models.PromoCode]:
    return db.query(models.PromoCode).filter(models.PromoCode.code == normalize_code(code)).first()


def calculate_discount(promo: models.PromoCode, amount: Decimal) -> Decimal:
    """
    Discount for an order amount: percentage (optionally capped) or fixed,
    never more than the amount itself.
    """
    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = amount * Decimal(str(promo.discount_value)) / Decimal("100")
        if promo.max_discount_amount and discount > promo.max_discount_amount:
            discount = Decimal(str(promo.max_discount_amount))
    else:
        discount = Decimal(str(promo.discount_value))
    return to_money(min(discount, amount))


def user_usage_count(db: Session, promo_id: int, user_id: int) -> int:
    return db.query(models.PromoUsage).filter(
        models.PromoUsage.promo_code_id == promo_id,
        models.PromoUsage.user_id == user_id,
    ).count()


def evaluate(
    db: Session,
    code: str,
    user_id: Optional[int],
    subtotal: Decimal,
    lines: Iterable[Tuple[int, Optional[int]]],
) -> PromoApplication:
    """
    Check that a promo code applies to this order and compute its discount.

    Args:
        db: Database session
        code: Code as entered by the customer
        user_id: Ordering user, None for guests
        subtotal: Server-computed subtotal
        lines: (product_id, category_id) of each order line

    Returns:
        PromoApplication with the computed discount

    Raises:
        ValidationError: With a customer-facing reason when the code does not apply
    """
    promo = get_promo(db, code)
    if promo is None:
        raise ValidationError("Invalid promo code")

    now = utcnow()
    if not promo.is_active:
        raise ValidationError("This promo code is no longer active")
    if now < promo.start_date:
        raise ValidationError("This promo code is not yet active")
    if now > promo.end_date:
        raise ValidationError("This promo code has expired")
    if promo.max_usage_count is not None and promo.current_usage_count >= promo.max_usage_count:
        raise ValidationError("This promo code has reached its usage limit")
    if user_id is not None and user_usage_count(db, promo.id, user_id) >= promo.max_usage_per_user:
        raise ValidationError("You have already used this promo code maximum allowed times")
    if subtotal < promo.min_order_amount:
        raise ValidationError(f"Minimum order amount of ₹{promo.min_order_amount} required to use this code")

    if promo.first_order_only:
        if user_id is None:
            raise ValidationError("Sign in to use this first-order promo code")
        previous = db.query(models.Order).filter(
            models.Order.user_id == user_id,
            models.Order.status != OrderStatus.CANCELLED,
        ).count()
        if previous > 0:
            raise ValidationError("This promo code is only valid for first orders")

    if not promo.is_applicable_to_all:
        product_ids = set(promo.applicable_product_ids or [])
        category_ids = set(promo.applicable_category_ids or [])
        if not any(pid in product_ids or (cid is not None and cid in category_ids) for pid, cid in lines):
            raise ValidationError("This promo code is not applicable to items in your cart")

    return PromoApplication(
        promo_id=promo.id,
        code=promo.code,
        discount_type=DiscountType(promo.discount_type),
        discount_amount=calculate_discount(promo, subtotal),
    )


def record_usage(db: Session, application: PromoApplication, user_id: Optional[int], order_id: str) -> bool:
    """
    Count one use of a promo against its global and per-user limits.

    Best-effort: the order already exists, so a lost race on the global cap or
    the per-user limit is logged rather than raised.

    Returns:
        True if the use stayed within both limits, False otherwise
    """
    stmt = (
        update(models.PromoCode)
        .where(
            models.PromoCode.id == application.promo_id,
            (models.PromoCode.max_usage_count.is_(None))
            | (models.PromoCode.current_usage_count < models.PromoCode.max_usage_count),
        )
        .values(current_usage_count=models.PromoCode.current_usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        within_limits = result.rowcount == 1
        if not within_limits:
            logger.warning(f"Promo {application.code} hit its usage limit while order {order_id} was created")

        if user_id is not None:
            promo = db.get(models.PromoCode, application.promo_id)
            if user_usage_count(db, application.promo_id, user_id) >= promo.max_usage_per_user:
                within_limits = False
                logger.warning(
                    f"Promo {application.code} used beyond its per-user limit by user {user_id} (order {order_id})"
                )
        db.add(models.PromoUsage(
            promo_code_id=application.promo_id,
            user_id=user_id,
            order_id=order_id,
            discount_amount=application.discount_amount,
        ))
        db.commit()
        return within_limits
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record usage of promo {application.code} for order {order_id}: {e}")
        return False


def restore_usage(db: Session, order: models.Order) -> None:
    """Give back the promo usage of a cancelled order."""
    if order.promo_code_id is None:
        return
    try:
        deleted = db.query(models.PromoUsage).filter(
            models.PromoUsage.order_id == order.id
        ).delete(synchronize_session=False)
        if deleted:
            db.execute(
                update(models.PromoCode)
                .where(models.PromoCode.id == order.promo_code_id, models.PromoCode.current_usage_count > 0)
                .values(current_usage_count=models.PromoCode.current_usage_count - 1)
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to restore promo usage for order {order.order_number}: {e}")
