"""
SQLAlchemy ORM models for the Orders service.

Defines the order aggregate (order row, status history, number sequence), the
catalog projection the service reserves stock against, and promo code bookkeeping.
"""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, JSON,
    Numeric, String, Text, UniqueConstraint, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_order_id() -> str:
    return uuid.uuid4().hex


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    COD = "cod"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ReturnStatus(str, enum.Enum):
    NONE = "none"
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECEIVED = "received"
    PROCESSED = "processed"


class DiscountType(str, enum.Enum):
    NONE = "none"
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Product(Base):
    """
    Catalog projection used for order creation.

    Attributes:
        id (int): Primary key
        name (str): Display name, copied into order item snapshots
        image_url (str): Primary image URL
        price (Decimal): List price
        sale_price (Decimal): Optional sale price; wins over ``price`` when set
        status (ProductStatus): Only ``active`` products can be ordered
        category_id (int): Optional category, used by promo applicability
        purchases (int): Units sold (best-effort counter)
        revenue (Decimal): Revenue attributed to the product (best-effort counter)
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=True)
    status = Column(_enum(ProductStatus), nullable=False, default=ProductStatus.ACTIVE)
    category_id = Column(Integer, nullable=True)
    purchases = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    variants = relationship("ProductVariant", back_populates="product")

    @property
    def effective_price(self) -> Decimal:
        return self.sale_price if self.sale_price else self.price


class ProductVariant(Base):
    """
    One (size, color) SKU of a product; the unit of stock tracking.

    ``stock`` never goes negative: the CHECK constraint backs up the conditional
    decrement in :mod:`storefront_orders.inventory`.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        UniqueConstraint("product_id", "size", "color_name", name="uq_variant_size_color"),
        CheckConstraint("stock >= 0", name="ck_variant_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    size = Column(String, nullable=False)
    color_name = Column(String, nullable=False)
    color_hex = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    stock = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")


class OrderSequence(Base):
    """Monotonic source of human-readable order numbers."""
    __tablename__ = "order_sequence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    """
    Order aggregate: identity, item snapshot, pricing, payment, status, tracking
    and return records. Orders are never deleted.

    Attributes:
        id (str): Opaque durable identifier (hex UUID)
        order_number (str): Zero-padded sequence number shown to customers
        user_id (int): Owning user, None for guest orders
        is_guest (bool): Guest checkout marker
        guest_email (str): Contact email for guest orders
        tracking_token (str): Random token for anonymous guest tracking
        items (list): Immutable item snapshots (stored as JSON)
        gateway_order_id (str): Gateway order identifier; unique, the settlement
            idempotency key
        status (OrderStatus): Lifecycle status
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, index=True, default=new_order_id)
    order_number = Column(String(16), unique=True, nullable=False, index=True)

    user_id = Column(Integer, nullable=True, index=True)
    is_guest = Column(Boolean, nullable=False, default=False)
    guest_email = Column(String, nullable=True)
    tracking_token = Column(String(64), unique=True, nullable=True, index=True)

    items = Column(JSONType, nullable=False, default=list)

    # pricing
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_method = Column(String(32), nullable=False, default="standard")
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_code = Column(String(32), nullable=True)
    discount_type = Column(_enum(DiscountType), nullable=False, default=DiscountType.NONE)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)
    total = Column(Numeric(10, 2), nullable=False)

    shipping_address = Column(JSONType, nullable=False)
    billing_address = Column(JSONType, nullable=False)
    special_instructions = Column(Text, nullable=True)

    # payment
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_transaction_id = Column(String, nullable=True)
    gateway_order_id = Column(String, unique=True, nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refunded_at = Column(DateTime, nullable=True)
    refund_transaction_id = Column(String, nullable=True)
    refund_method = Column(String(32), nullable=True)

    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)

    # tracking
    carrier = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    # returns
    return_requested = Column(Boolean, nullable=False, default=False)
    return_reason = Column(String, nullable=True)
    return_comments = Column(Text, nullable=True)
    return_status = Column(_enum(ReturnStatus), nullable=False, default=ReturnStatus.NONE)
    return_requested_at = Column(DateTime, nullable=True)
    return_admin_notes = Column(Text, nullable=True)
    refund_destination = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    history = relationship(
        "StatusHistoryEntry",
        back_populates="order",
        order_by="StatusHistoryEntry.id",
    )

    # Nested read views for the API schemas
    @property
    def price(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "shipping_cost": self.shipping_cost,
            "shipping_method": self.shipping_method,
            "tax": self.tax,
            "discount_amount": self.discount_amount,
            "discount_code": self.discount_code,
            "discount_type": self.discount_type,
            "total": self.total,
        }

    @property
    def payment(self) -> dict:
        return {
            "method": self.payment_method,
            "status": self.payment_status,
            "transaction_id": self.payment_transaction_id,
            "gateway_order_id": self.gateway_order_id,
            "paid_at": self.paid_at,
            "refunded_amount": self.refunded_amount,
            "refunded_at": self.refunded_at,
            "refund_transaction_id": self.refund_transaction_id,
            "refund_method": self.refund_method,
        }

    @property
    def tracking(self) -> dict:
        return {
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "shipped_at": self.shipped_at,
            "estimated_delivery": self.estimated_delivery,
            "delivered_at": self.delivered_at,
        }

    @property
    def return_record(self) -> dict:
        return {
            "requested": self.return_requested,
            "reason": self.return_reason,
            "comments": self.return_comments,
            "status": self.return_status,
            "requested_at": self.return_requested_at,
            "admin_notes": self.return_admin_notes,
            "refund_destination": self.refund_destination,
        }


class StatusHistoryEntry(Base):
    """
    Append-only status log of an order.

    Attributes:
        id (int): Auto-incrementing entry ID, also the ordering key
        order_id (str): Order the entry belongs to
        status (OrderStatus): Status after the event
        previous_status (OrderStatus): Status before the event (None on creation)
        note (str): Human-readable note
        actor_id (int): User who triggered the event, None for system events
        created_at (datetime): When the event occurred
    """
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(_enum(OrderStatus), nullable=False)
    previous_status = Column(_enum(OrderStatus), nullable=True)
    note = Column(Text, nullable=True)
    actor_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="history")


class PromoCode(Base):
    """Promo code definition with its global usage counter."""
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False, index=True)
    description = Column(String(200), nullable=True)
    discount_type = Column(_enum(DiscountType), nullable=False, default=DiscountType.PERCENTAGE)
    discount_value = Column(Numeric(10, 2), nullable=False)
    max_usage_count = Column(Integer, nullable=True)  # None = unlimited
    current_usage_count = Column(Integer, nullable=False, default=0)
    max_usage_per_user = Column(Integer, nullable=False, default=1)
    min_order_amount = Column(Numeric(10, 2), nullable=False, default=0)
    max_discount_amount = Column(Numeric(10, 2), nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_applicable_to_all = Column(Boolean, nullable=False, default=True)
    applicable_product_ids = Column(JSONType, nullable=False, default=list)
    applicable_category_ids = Column(JSONType, nullable=False, default=list)
    first_order_only = Column(Boolean, nullable=False, default=False)


class PromoUsage(Base):
    """One application of a promo code to an order."""
    __tablename__ = "promo_usages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    used_at = Column(DateTime, default=utcnow, nullable=False)


class GatewayOrder(Base):
    """
    A gateway order opened by create-payment, with the amount it was opened for.

    Attributes:
        gateway_order_id (str): Id issued by the gateway
        amount_minor (int): Quoted total in the currency's minor unit
        currency (str): ISO currency code
        user_id (int): User the quote was made for, None for guests
        order_id (str): Order created for this payment, None until then
        created_at (datetime): When the gateway order was opened
    """
    __tablename__ = "gateway_orders"

    gateway_order_id = Column(String, primary_key=True)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def check_total_invariant(mapper, connection, target):
    """Reject any persist where total != subtotal + shipping - discount + tax."""
    expected = (
        Decimal(str(target.subtotal))
        + Decimal(str(target.shipping_cost or 0))
        - Decimal(str(target.discount_amount or 0))
        + Decimal(str(target.tax or 0))
    )
    if abs(expected - Decimal(str(target.total))) > Decimal("0.005"):
        raise ValueError(
            f"Order {target.order_number}: total {target.total} does not match price breakdown ({expected})"
        )
