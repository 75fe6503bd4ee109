"""
Database operations for the order aggregate.

Reads of orders and their history, order number allocation and history appends.
The write paths that change order state live in ``pipeline``, ``settlement``,
``lifecycle`` and ``returns``.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from . import models
from .models import OrderStatus, ReturnStatus

logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_gateway_order_id(db: Session, gateway_order_id: str) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.gateway_order_id == gateway_order_id).first()


def get_order_by_tracking_token(db: Session, token: str) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.tracking_token == token).first()


def get_gateway_order(db: Session, gateway_order_id: str) -> Optional[models.GatewayOrder]:
    return db.get(models.GatewayOrder, gateway_order_id)


def record_gateway_order(
    db: Session,
    gateway_order_id: str,
    amount_minor: int,
    currency: str,
    user_id: Optional[int] = None,
) -> models.GatewayOrder:
    """
    Remember a gateway order opened by create-payment.

    Args:
        db: Database session
        gateway_order_id: Id returned by the gateway
        amount_minor: Amount the gateway order was opened for, in minor units
        currency: ISO currency code
        user_id: User the quote was made for (None for guests)

    Returns:
        The stored GatewayOrder
    """
    db_gateway_order = models.GatewayOrder(
        gateway_order_id=gateway_order_id,
        amount_minor=amount_minor,
        currency=currency,
        user_id=user_id,
    )
    db.add(db_gateway_order)
    db.commit()
    db.refresh(db_gateway_order)
    return db_gateway_order


def get_orders(
    db: Session,
    user_id: Optional[int] = None,
    status: Optional[OrderStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    """
    Retrieve a list of orders, newest first, with pagination.

    Args:
        db: Database session
        user_id: Only orders of this user (None for all users)
        status: Only orders in this status
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def get_return_requests(
    db: Session,
    return_status: Optional[ReturnStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    query = db.query(models.Order).filter(models.Order.return_requested.is_(True))
    if return_status is not None:
        query = query.filter(models.Order.return_status == return_status)
    return query.order_by(models.Order.return_requested_at.desc()).offset(skip).limit(limit).all()


def get_history(db: Session, order_id: str) -> List[models.StatusHistoryEntry]:
    return db.query(models.StatusHistoryEntry).filter(
        models.StatusHistoryEntry.order_id == order_id
    ).order_by(models.StatusHistoryEntry.id.asc()).all()


def next_order_number(db: Session) -> str:
    """
    Allocate the next human-readable order number.

    Numbers come from an autoincrement table, so concurrent allocations never
    collide. The row is flushed, not committed: it belongs to the caller's
    order transaction.
    """
    seq = models.OrderSequence()
    db.add(seq)
    db.flush()
    return f"{seq.id:06d}"


def add_history(
    db: Session,
    order: models.Order,
    status: OrderStatus,
    note: Optional[str] = None,
    previous_status: Optional[OrderStatus] = None,
    actor_id: Optional[int] = None,
    commit: bool = True,
) -> models.StatusHistoryEntry:
    """
    Append an entry to an order's status history.

    Args:
        db: Database session
        order: Order the entry belongs to
        status: Status after the event
        note: Human-readable description
        previous_status: Status before the event (optional)
        actor_id: User who triggered the event (optional)
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        The new history entry
    """
    entry = models.StatusHistoryEntry(
        order_id=order.id,
        status=status,
        previous_status=previous_status,
        note=note,
        actor_id=actor_id,
    )
    db.add(entry)
    if commit:
        db.commit()
    return entry
