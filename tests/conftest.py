import os
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="rupie-times-tests-")

_REQUIRED_DEFAULTS = {
    "DATABASE_URL": f"sqlite:///{Path(_TEST_DB_DIR, 'import.db').as_posix()}",
    "RAZORPAY_KEY_ID": "rzp_test_key",
    "RAZORPAY_KEY_SECRET": "rzp_test_secret",
    "JWT_SECRET": "test-jwt-secret",
    "RESEND_API_KEY": "re_test_dummy",
    "INVOICE_LOGO_PATH": str(Path(_TEST_DB_DIR, "missing-logo.png")),
}
for _k, _v in _REQUIRED_DEFAULTS.items():
    os.environ[_k] = _v

from fastapi.testclient import TestClient  # noqa: E402

from app import models  # noqa: E402
from app.auth import create_access_token  # noqa: E402
from app.database import Base, SessionLocal, build_engine, get_db  # noqa: E402
from app.email_service import EmailResult  # noqa: E402
from app.main import app  # noqa: E402
from app.schema_patch import apply_schema_patches  # noqa: E402
from app.utils.signature import compute_order_signature  # noqa: E402

TEST_SECRET = _REQUIRED_DEFAULTS["RAZORPAY_KEY_SECRET"]


@pytest.fixture(scope="function")
def db_engine(tmp_path: Path):
    """Fresh file-backed SQLite database per test, with SessionLocal bound to it."""
    engine = build_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    Base.metadata.create_all(bind=engine)
    apply_schema_patches(engine)

    original_bind = SessionLocal.kw.get("bind")
    SessionLocal.configure(bind=engine)
    try:
        yield engine
    finally:
        SessionLocal.configure(bind=original_bind)
        engine.dispose()


@pytest.fixture
def db(db_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_engine):
    def _get_test_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_test_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Capture outbound invoice emails instead of calling Resend."""
    outbox = []

    def _fake_send_email(to, subject, html, attachments=None):
        outbox.append({"to": to, "subject": subject, "html": html, "attachments": attachments or []})
        return EmailResult(data={"id": f"email_{len(outbox)}"})

    monkeypatch.setattr("app.invoices.send_email", _fake_send_email)
    return outbox


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(name="Asha Verma", email=None, mobile="9876543210", role="user"):
        counter["n"] += 1
        user = models.User(
            name=name,
            email=email or f"reader{counter['n']}@example.com",
            mobile=mobile,
            role=role,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_product(db):
    def _make_product(heading="Market Pulse", is_active=True, variants=None):
        product = models.Product(heading=heading, short_description=f"{heading} newsletter", is_active=is_active)
        for duration, value, unit, price in variants or [("1 Month", 1, "months", "100.00")]:
            product.variants.append(
                models.ProductVariant(
                    duration=duration,
                    duration_value=value,
                    duration_unit=unit,
                    price=Decimal(price),
                    is_active=True,
                )
            )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make_product


@pytest.fixture
def make_promo(db):
    def _make_promo(code, product=None, discount_type="flat", discount_value="10", **kwargs):
        promo = models.PromoCode(
            product_id=product.id if product is not None else None,
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(discount_value),
            usage_count=kwargs.pop("usage_count", 0),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo

    return _make_promo


@pytest.fixture
def make_payment(db):
    """Record a `created` order the way the create-order step leaves it."""

    def _make_payment(order_id, items, user=None, amount=None):
        cart = []
        subtotal = Decimal("0")
        for product, duration, price, discount in items:
            price = Decimal(str(price))
            discount = Decimal(str(discount))
            subtotal += price - discount
            cart.append(
                {
                    "productId": product.id,
                    "duration": duration,
                    "productName": product.heading,
                    "actualPrice": float(price),
                    "discountedPrice": float(price - discount),
                    "discountApplied": float(discount),
                    "promoCode": None,
                }
            )
        total = amount if amount is not None else (subtotal * Decimal("1.18")).quantize(Decimal("0.01"))
        payment = models.Payment(
            user_id=user.id if user is not None else None,
            razorpay_order_id=order_id,
            amount=Decimal(str(total)),
            currency="INR",
            status="created",
            subscription_ids=[],
            metadata_={"cartItems": cart, "subtotal": float(subtotal)},
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _make_payment


def auth_headers(user) -> dict:
    token = create_access_token({"id": user.id, "email": user.email, "name": user.name, "role": "user"})
    return {"Authorization": f"Bearer {token}"}


def signed_payment_response(order_id: str, payment_id: str, secret: str = TEST_SECRET) -> dict:
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": compute_order_signature(order_id, payment_id, secret),
        "method": "upi",
    }


def verify_body(order_id, payment_id, cart, promo_code=None, discount=0):
    body = {
        "paymentResponse": signed_payment_response(order_id, payment_id),
        "cartItems": [{"productId": product.id, "duration": duration} for product, duration in cart],
    }
    if promo_code:
        body["promoCode"] = promo_code
        body["promoDetails"] = {"code": promo_code, "discountAmount": discount}
    return body


def at(*parts) -> datetime:
    return datetime(*parts)
