"""
Sales counters.

Product-level purchase and revenue counters are analytics, not order state:
they are bumped with atomic increments after an order is persisted and a
failure here is logged, never raised.
"""
import logging
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)


def record_sale(db: Session, product_id: int, quantity: int, revenue: Decimal) -> bool:
    """
    Add a sale to a product's counters.

    Returns:
        True if the counters were updated, False otherwise
    """
    stmt = (
        update(models.Product)
        .where(models.Product.id == product_id)
        .values(
            purchases=models.Product.purchases + quantity,
            revenue=models.Product.revenue + revenue,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        db.execute(stmt)
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to update sales counters for product {product_id}: {e}")
        return False
