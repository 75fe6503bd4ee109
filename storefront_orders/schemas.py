"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .models import DiscountType, OrderStatus, PaymentMethod, PaymentStatus, ReturnStatus


class OrderItemIn(BaseModel):
    """Schema for a requested order line."""
    product_id: int = Field(..., description="Catalog product ID")
    size: str
    color: str = Field(..., description="Color name of the variant")
    quantity: int = Field(..., gt=0, description="Quantity ordered")


class Address(BaseModel):
    first_name: str
    last_name: str
    company: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str = Field(..., pattern=r"^\d{6}$", description="6-digit PIN code")
    country: str = "India"
    phone: Optional[str] = None


class OrderCreate(BaseModel):
    """
    Schema for creating a new order.

    Pricing is always computed server-side; there are no
    subtotal/tax/total fields here.
    """
    items: List[OrderItemIn] = Field(..., description="Order lines")
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    shipping_method: str = "standard"
    promo_code: Optional[str] = None
    special_instructions: Optional[str] = None
    email: Optional[str] = Field(None, description="Contact email, required for guest checkout")
    gateway_order_id: Optional[str] = Field(
        None, description="Gateway order opened by create-payment, settled later via webhook (gateway payments only)"
    )


class PriceBreakdown(BaseModel):
    subtotal: Decimal
    shipping_cost: Decimal
    shipping_method: str
    tax: Decimal
    discount_amount: Decimal = Decimal("0.00")
    discount_code: Optional[str] = None
    discount_type: DiscountType = DiscountType.NONE
    total: Decimal


class VariantSnapshot(BaseModel):
    size: str
    color_name: str
    color_hex: Optional[str] = None
    sku: Optional[str] = None


class OrderItem(BaseModel):
    """Immutable snapshot of an ordered line, taken at creation time."""
    product_id: int
    product_name: str
    product_image: Optional[str] = None
    variant: VariantSnapshot
    quantity: int = Field(..., ge=1)
    unit_price: Decimal
    line_total: Decimal


class PaymentRecord(BaseModel):
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_amount: Decimal = Decimal("0.00")
    refunded_at: Optional[datetime] = None
    refund_transaction_id: Optional[str] = None
    refund_method: Optional[str] = None


class TrackingInfo(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipped_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class ReturnRecord(BaseModel):
    requested: bool = False
    reason: Optional[str] = None
    comments: Optional[str] = None
    status: ReturnStatus = ReturnStatus.NONE
    requested_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    refund_destination: Optional[dict] = None


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        id (str): Opaque order identifier
        order_number (str): Human-readable order number
        user_id (int): Owning user (None for guests)
        is_guest (bool): Guest checkout marker
        items (List[OrderItem]): Item snapshots
        price (PriceBreakdown): Pricing at creation time
        payment (PaymentRecord): Payment sub-record
        status (OrderStatus): Lifecycle status
        tracking (TrackingInfo): Shipping/tracking details
        return_record (ReturnRecord): Return/refund details
        created_at (datetime): When the order was created
    """
    id: str
    order_number: str
    user_id: Optional[int] = None
    is_guest: bool = False
    guest_email: Optional[str] = None
    tracking_token: Optional[str] = None
    items: List[OrderItem]
    price: PriceBreakdown
    shipping_address: dict
    billing_address: dict
    payment: PaymentRecord
    status: OrderStatus
    tracking: TrackingInfo
    return_record: ReturnRecord
    special_instructions: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StatusHistoryEntry(BaseModel):
    """
    Schema for order status history entries.

    Attributes:
        id (int): Entry ID
        order_id (str): Order identifier
        status (OrderStatus): Status after the event
        previous_status (OrderStatus): Status before the event (optional)
        note (str): Human-readable note (optional)
        actor_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    status: OrderStatus
    previous_status: Optional[OrderStatus] = None
    note: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreatePaymentRequest(BaseModel):
    """Items to quote and open a gateway order for."""
    items: List[OrderItemIn]
    shipping_method: str = "standard"
    promo_code: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    gateway_order_id: str
    amount: Decimal
    amount_minor: int = Field(..., description="Amount in the currency's minor unit (paise)")
    currency: str
    key_id: str
    price: PriceBreakdown


class VerifyPaymentRequest(BaseModel):
    """Client callback after the gateway checkout completes."""
    gateway_order_id: str
    gateway_payment_id: str
    signature: str
    order_data: OrderCreate


class PaymentFailedRequest(BaseModel):
    gateway_order_id: Optional[str] = None
    error_description: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class TrackingUpdate(BaseModel):
    carrier: str
    tracking_number: str
    estimated_delivery: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RefundDestinationIn(BaseModel):
    """
    Where a cash-on-delivery refund should be sent. Field formats are checked
    by ``validators.validate_refund_destination``.
    """
    method: Literal["bank_transfer", "upi"]
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None
    upi_id: Optional[str] = None


class ReturnRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    comments: Optional[str] = None
    refund_destination: Optional[RefundDestinationIn] = None


class ReturnStatusUpdate(BaseModel):
    status: ReturnStatus
    admin_notes: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_transaction_id: Optional[str] = None


class WebhookAck(BaseModel):
    status: str = "ok"
    outcome: str
