"""
Inventory ledger: per-variant stock reservation and release.

Each (product, size, color) variant is an independent contention domain. A
reservation is a single conditional UPDATE, so two checkouts racing for the last
unit cannot both succeed; there is no read-then-write window.
"""
import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models
from .errors import InsufficientStock

logger = logging.getLogger(__name__)


class StockLine(NamedTuple):
    product_id: int
    size: str
    color: str
    quantity: int


def get_variant(db: Session, product_id: int, size: str, color: str) -> Optional[models.ProductVariant]:
    """
    Retrieve the variant of a product matching size and color name.

    Args:
        db: Database session
        product_id: Catalog product ID
        size: Variant size
        color: Variant color name

    Returns:
        ProductVariant or None if no variant matches
    """
    return db.query(models.ProductVariant).filter(
        models.ProductVariant.product_id == product_id,
        models.ProductVariant.size == size,
        models.ProductVariant.color_name == color,
    ).first()


def current_stock(db: Session, product_id: int, size: str, color: str) -> Optional[int]:
    return db.query(models.ProductVariant.stock).filter(
        models.ProductVariant.product_id == product_id,
        models.ProductVariant.size == size,
        models.ProductVariant.color_name == color,
    ).scalar()


def reserve(db: Session, product_id: int, size: str, color: str, quantity: int) -> int:
    """
    Atomically take ``quantity`` units of a variant.

    Args:
        db: Database session
        product_id: Catalog product ID
        size: Variant size
        color: Variant color name
        quantity: Units to reserve

    Returns:
        Stock left on the variant after the reservation

    Raises:
        InsufficientStock: If the variant has fewer than ``quantity`` units (or no longer exists)
    """
    stmt = (
        update(models.ProductVariant)
        .where(
            models.ProductVariant.product_id == product_id,
            models.ProductVariant.size == size,
            models.ProductVariant.color_name == color,
            models.ProductVariant.stock >= quantity,
        )
        .values(stock=models.ProductVariant.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if result.rowcount != 1:
        available = current_stock(db, product_id, size, color) or 0
        raise InsufficientStock(
            f"Insufficient stock for product {product_id} ({size}/{color}). "
            f"Available: {available}, Requested: {quantity}"
        )

    remaining = current_stock(db, product_id, size, color)
    logger.info(f"Reserved {quantity} units of product {product_id} ({size}/{color}), {remaining} left")
    return remaining


def release(db: Session, product_id: int, size: str, color: str, quantity: int) -> None:
    """
    Return ``quantity`` units to a variant (unconditional increment).

    Used for compensating rollbacks and cancellations.
    """
    stmt = (
        update(models.ProductVariant)
        .where(
            models.ProductVariant.product_id == product_id,
            models.ProductVariant.size == size,
            models.ProductVariant.color_name == color,
        )
        .values(stock=models.ProductVariant.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if result.rowcount != 1:
        logger.error(f"Release of {quantity} units failed: variant {product_id} ({size}/{color}) not found")
        return
    logger.info(f"Released {quantity} units of product {product_id} ({size}/{color})")


def reserve_all(db: Session, lines: List[StockLine]) -> List[int]:
    """
    Reserve every line, or none of them.

    If any reservation fails, all reservations already made in this call are
    released before the error propagates.

    Args:
        db: Database session
        lines: Stock lines to reserve

    Returns:
        Remaining stock per line, in input order

    Raises:
        InsufficientStock: If any line cannot be reserved
    """
    reserved: List[StockLine] = []
    remaining: List[int] = []
    try:
        for line in lines:
            remaining.append(reserve(db, line.product_id, line.size, line.color, line.quantity))
            reserved.append(line)
    except Exception as e:
        logger.error(f"Reservation failed: {e}")
        if reserved:
            logger.info(f"Rolling back {len(reserved)} reservations")
            release_all(db, reserved)
        raise
    return remaining


def release_all(db: Session, lines: List[StockLine]) -> None:
    """Release every line; a failure on one line does not stop the others."""
    for line in lines:
        try:
            release(db, line.product_id, line.size, line.color, line.quantity)
        except Exception:
            logger.exception(
                f"Release failed for product {line.product_id} ({line.size}/{line.color}), qty {line.quantity}"
            )
