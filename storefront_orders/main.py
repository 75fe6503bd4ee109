"""
Orders Service API

FastAPI application for the order lifecycle: checkout, payment settlement against
the gateway (client callback and webhook), fulfillment status changes,
cancellation and returns.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Create an order (signed-in or guest checkout)
    GET /orders: List orders (own orders; admins see all)
    GET /orders/track/{tracking_token}: Guest order tracking
    GET /orders/{order_id}: Get a single order
    GET /orders/{order_id}/history: Status history of an order
    POST /orders/create-payment: Price the cart and open a gateway order
    POST /orders/verify-payment: Client callback after gateway checkout
    POST /orders/payment-failed: Client-reported payment failure
    POST /orders/webhook: Gateway webhook
    PUT /orders/{order_id}/status: Admin status change
    PUT /orders/{order_id}/tracking: Admin tracking update
    PUT /orders/{order_id}/cancel: Cancel an order
    POST /returns/{order_id}/return: Request a return
    GET /returns/admin/all: List return requests (admin)
    PUT /returns/admin/{order_id}: Advance a return (admin)

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import logging
import uuid
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, crud, lifecycle, models, pipeline, returns, schemas, settlement
from .clients import gateway_client
from .database import engine, get_db
from .errors import OrderServiceError, UpstreamFailure

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="orders-service")

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    """Render domain errors with the same ``{"detail": ...}`` shape as HTTPException."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_order_or_404(db: Session, order_id: str) -> models.Order:
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return db_order


def ensure_can_view(db_order: models.Order, current_user: auth.CurrentUser) -> None:
    # Check ownership unless admin
    if not current_user.is_admin and db_order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: ``{"status": "healthy"}`` when the service is operational.
    """
    return {"status": "healthy"}


@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user)
):
    """
    Create a new order.

    Prices, shipping and tax are computed server-side and stock is reserved
    atomically. Guests (no bearer token) must supply an email and get a tracking
    token back.

    Raises:
        400 on validation errors, 404 for unknown products or variants,
        409 when stock runs out
    """
    return pipeline.create_order(db, order, current_user)


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    status_filter: Optional[models.OrderStatus] = Query(None, alias="status"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination (authenticated users see their own, admins see all).

    Args:
        status_filter: Only orders in this status
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
    """
    user_id = None if current_user.is_admin else current_user.id
    return crud.get_orders(db, user_id=user_id, status=status_filter, skip=skip, limit=min(limit, 100))


@app.get("/orders/track/{tracking_token}", response_model=schemas.Order)
def track_guest_order(tracking_token: str, db: Session = Depends(get_db)):
    """Look up a guest order by its tracking token (no authentication)."""
    db_order = crud.get_order_by_tracking_token(db, tracking_token)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return db_order


@app.post("/orders/create-payment", response_model=schemas.CreatePaymentResponse)
async def create_payment(
    request: schemas.CreatePaymentRequest,
    db: Session = Depends(get_db),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user)
):
    """
    Price the cart server-side and open a gateway order for that amount.

    Nothing is reserved yet; stock is taken when the paid order is created.

    Raises:
        503 if the gateway is not configured or unavailable
    """
    if not config.GATEWAY_KEY_ID or not config.GATEWAY_KEY_SECRET:
        raise UpstreamFailure("Online payments are not configured")

    lines = pipeline.resolve_items(db, request.items)
    user_id = current_user.id if current_user else None
    breakdown, _ = pipeline.quote(db, lines, request.shipping_method, request.promo_code, user_id)

    receipt = f"rcpt_{uuid.uuid4().hex[:16]}"
    amount_minor = gateway_client.to_minor_units(breakdown.total)
    gateway_order = await gateway_client.create_order(
        breakdown.total,
        config.CURRENCY,
        receipt,
        notes={"user_id": str(user_id) if user_id else "guest"},
    )
    # Orders may only be created against gateway orders issued here, for this amount
    crud.record_gateway_order(db, gateway_order["id"], amount_minor, config.CURRENCY, user_id=user_id)
    logger.info(f"Opened gateway order {gateway_order['id']} for {breakdown.total} {config.CURRENCY}")

    return schemas.CreatePaymentResponse(
        gateway_order_id=gateway_order["id"],
        amount=breakdown.total,
        amount_minor=amount_minor,
        currency=config.CURRENCY,
        key_id=config.GATEWAY_KEY_ID,
        price=breakdown,
    )


@app.post("/orders/verify-payment", response_model=schemas.Order)
def verify_payment(
    callback: schemas.VerifyPaymentRequest,
    db: Session = Depends(get_db),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user)
):
    """
    Client callback after gateway checkout.

    Verifies the payment signature and returns the paid order, creating it on
    the first valid callback. Replays return the same order.

    Raises:
        400 "Payment verification failed" on a bad signature
    """
    return settlement.settle_client_callback(db, callback, current_user)


@app.post("/orders/payment-failed")
def payment_failed(request: schemas.PaymentFailedRequest):
    """Acknowledge a client-reported payment failure. No order state changes."""
    logger.info(f"Client reported payment failure for {request.gateway_order_id}: {request.error_description}")
    return {"status": "acknowledged"}


@app.post("/orders/webhook", response_model=schemas.WebhookAck)
async def gateway_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Gateway webhook. Authenticated by the HMAC signature header, not a bearer token.

    Unknown orders and already-settled orders are acknowledged with 200 so the
    gateway stops retrying.
    """
    raw_body = await request.body()
    outcome = settlement.handle_webhook(db, raw_body, request.headers.get(WEBHOOK_SIGNATURE_HEADER))
    return schemas.WebhookAck(outcome=outcome)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    ensure_can_view(db_order, current_user)
    return db_order


@app.get("/orders/{order_id}/history", response_model=List[schemas.StatusHistoryEntry])
def get_order_history(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Status history of an order in chronological order (owner or admin)."""
    db_order = get_order_or_404(db, order_id)
    ensure_can_view(db_order, current_user)
    return crud.get_history(db, order_id)


@app.put("/orders/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Move an order along the fulfillment path (admin only).

    Raises:
        409 for transitions the state machine does not allow
    """
    db_order = get_order_or_404(db, order_id)
    return await lifecycle.update_status(db, db_order, update.status, current_user, note=update.note)


@app.put("/orders/{order_id}/tracking", response_model=schemas.Order)
def update_order_tracking(
    order_id: str,
    tracking: schemas.TrackingUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Set carrier and tracking number (admin only); the tracking URL is generated."""
    db_order = get_order_or_404(db, order_id)
    return lifecycle.update_tracking(db, db_order, tracking, current_user)


@app.put("/orders/{order_id}/cancel", response_model=schemas.Order)
async def cancel_order(
    order_id: str,
    request: Optional[schemas.CancelRequest] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order before it ships (owner or admin).

    Reserved stock is released. Paid gateway orders are refunded and can only
    be cancelled by the owner within the cancellation window.
    """
    db_order = get_order_or_404(db, order_id)
    reason = request.reason if request else None
    return await lifecycle.cancel_order(db, db_order, current_user, reason=reason)


@app.post("/returns/{order_id}/return", response_model=schemas.Order)
def request_return(
    order_id: str,
    request: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Request a return of a delivered order (owner only), within the return window.

    Cash on delivery orders must include where the refund should go.
    """
    db_order = get_order_or_404(db, order_id)
    return returns.request_return(db, db_order, current_user, request)


@app.get("/returns/admin/all", response_model=List[schemas.Order])
def list_return_requests(
    status_filter: Optional[models.ReturnStatus] = Query(None, alias="status"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """List orders with a return request, newest first (admin only)."""
    return returns.list_returns(db, return_status=status_filter, skip=skip, limit=min(limit, 100))


@app.put("/returns/admin/{order_id}", response_model=schemas.Order)
def update_return_status(
    order_id: str,
    change: schemas.ReturnStatusUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Advance a return request (admin only).

    ``processed`` records the refund and marks the order returned.
    """
    db_order = get_order_or_404(db, order_id)
    return returns.update_return_status(db, db_order, change, current_user)
