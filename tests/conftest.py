"""Pytest fixtures for storefront_orders tests."""

import hashlib
import hmac
import os
import tempfile
from decimal import Decimal

# The engine is built at import time, so the database must be chosen first
_db_dir = tempfile.mkdtemp(prefix="storefront-orders-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'orders.db')}"
os.environ["NOTIFICATION_URLS"] = ""
os.environ["CART_SERVICE_URL"] = "http://127.0.0.1:9"

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from storefront_orders import config, crud, inventory, models
from storefront_orders.clients import cart_client, gateway_client
from storefront_orders.database import SessionLocal, engine
from storefront_orders.models import ProductStatus

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

SHIPPING_ADDRESS = {
    "first_name": "Asha",
    "last_name": "Verma",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "phone": "9876543210",
}


@pytest.fixture(autouse=True)
def reset_database():
    """Fresh tables for every test."""
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def gateway_secrets(monkeypatch):
    monkeypatch.setattr(config, "GATEWAY_KEY_ID", "rzp_test_key")
    monkeypatch.setattr(config, "GATEWAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setattr(config, "GATEWAY_WEBHOOK_SECRET", WEBHOOK_SECRET)


@pytest.fixture(autouse=True)
def cleared_carts(monkeypatch):
    """Record cart clears instead of calling the Cart service."""
    calls = []

    async def cleared():
        return True

    def fake_clear_cart(user_id, token):
        calls.append(user_id)
        return cleared()

    monkeypatch.setattr(cart_client, "clear_cart", fake_clear_cart)
    return calls


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from storefront_orders.main import app

    return TestClient(app)


@pytest.fixture
def make_product(db):
    """Factory for active catalog products with their variants."""
    def _make(
        name="Cotton Kurta",
        price="500.00",
        sale_price=None,
        status=ProductStatus.ACTIVE,
        category_id=None,
        variants=(("M", "Indigo", 10),),
    ):
        product = models.Product(
            name=name,
            image_url=f"https://cdn.example.com/{name.lower().replace(' ', '-')}.jpg",
            price=Decimal(price),
            sale_price=Decimal(sale_price) if sale_price else None,
            status=status,
            category_id=category_id,
            purchases=0,
            revenue=Decimal("0"),
        )
        db.add(product)
        db.flush()
        for size, color, stock in variants:
            db.add(models.ProductVariant(
                product_id=product.id,
                size=size,
                color_name=color,
                color_hex="#3f51b5",
                sku=f"SKU-{product.id}-{size}-{color}".upper(),
                stock=stock,
            ))
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def stock_of():
    """Read a variant's stock through a separate session."""
    def _stock(product_id, size="M", color="Indigo"):
        session = SessionLocal()
        try:
            return inventory.current_stock(session, product_id, size, color)
        finally:
            session.close()

    return _stock


@pytest.fixture
def headers_for():
    """Bearer headers for a user of the given id and role."""
    def _headers(user_id=1, role="customer"):
        token = jwt.encode(
            {"sub": str(user_id), "email": f"user{user_id}@example.com", "role": role},
            config.SECRET_KEY,
            algorithm=config.ALGORITHM,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def admin_headers(headers_for):
    return headers_for(user_id=99, role="admin")


@pytest.fixture
def order_body():
    """Checkout payload for one line of a product."""
    def _body(product, quantity=1, size="M", color="Indigo", **overrides):
        body = {
            "items": [{"product_id": product.id, "size": size, "color": color, "quantity": quantity}],
            "shipping_address": dict(SHIPPING_ADDRESS),
            "payment_method": "cod",
            "shipping_method": "standard",
        }
        body.update(overrides)
        return body

    return _body


@pytest.fixture
def sign():
    """Hex HMAC-SHA256, as the gateway computes it."""
    def _sign(secret, message):
        if isinstance(message, str):
            message = message.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def issue_gateway_order(db):
    """Record a gateway order the way create-payment does."""
    def _issue(gateway_order_id, total="640.00", user_id=None):
        amount_minor = gateway_client.to_minor_units(Decimal(total))
        return crud.record_gateway_order(db, gateway_order_id, amount_minor, "INR", user_id=user_id)

    return _issue
