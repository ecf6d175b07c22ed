import logging
import os
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from app import models
from app.subscriptions import utcnow

logger = logging.getLogger(__name__)

PAYMENT_CREATED = "created"
PAYMENT_CAPTURED = "captured"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"

_PAISE = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(_PAISE, rounding=ROUND_HALF_UP)


def tax_rate() -> Decimal:
    raw = os.getenv("GST_TAX_RATE", "0.18").strip()
    try:
        rate = Decimal(raw)
        if rate < 0 or rate >= 1:
            raise ValueError
        return rate
    except (ValueError, ArithmeticError):
        return Decimal("0.18")


def _merge_metadata(payment: models.Payment, **updates) -> None:
    # JSON columns are not mutation-tracked; assign a fresh dict.
    merged = dict(payment.metadata_ or {})
    merged.update(updates)
    payment.metadata_ = merged


def find_payment_by_order_id(db: Session, order_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.razorpay_order_id == order_id).first()


def create_payment_record(
    db: Session,
    order_data: dict[str, Any],
    cart_items: list[dict[str, Any]],
    user_id: Optional[int] = None,
    commit: bool = True,
) -> models.Payment:
    """Persist the freshly created gateway order with its per-item pricing snapshot."""
    subtotal = sum(
        (to_money(item.get("discountedPrice", item.get("price"))) for item in cart_items),
        Decimal("0"),
    )
    tax_amount = to_money(subtotal * tax_rate())
    total = to_money(subtotal + tax_amount)

    payment = models.Payment(
        user_id=user_id,
        razorpay_order_id=order_data["id"],
        amount=total,
        currency=order_data.get("currency") or "INR",
        status=PAYMENT_CREATED,
        description=f"Order created for {len(cart_items)} item(s)",
        subscription_ids=[],
        metadata_={
            "cartItems": cart_items,
            "subtotal": float(subtotal),
            "taxAmount": float(tax_amount),
            "totalInRupees": float(total),
            "totalInPaise": int(total * 100),
            "originalOrderAmount": order_data.get("amount"),
            "receipt": order_data.get("receipt"),
            "itemsCount": len(cart_items),
            "createdAt": utcnow().isoformat(),
        },
    )
    db.add(payment)
    if commit:
        db.commit()
        db.refresh(payment)
    else:
        db.flush()
    return payment


def log_payment_failure(
    db: Session,
    order_id: str,
    error_details: Optional[dict[str, Any]],
    cart_items: Optional[list] = None,
    commit: bool = True,
) -> models.Payment:
    """Mark the order failed, creating the row when the order was never recorded."""
    payment = find_payment_by_order_id(db, order_id)
    if payment is None:
        payment = models.Payment(
            razorpay_order_id=order_id,
            amount=Decimal("0"),
            subscription_ids=[],
            metadata_={},
        )
        db.add(payment)
    elif payment.status == PAYMENT_CAPTURED:
        logger.warning(
            "Ignoring failure report for captured order_id=%s code=%s",
            order_id,
            (error_details or {}).get("code"),
        )
        return payment

    payment.status = PAYMENT_FAILED
    updates = {"errorDetails": error_details, "failedAt": utcnow().isoformat()}
    # An empty cart keeps the pricing snapshot recorded at order creation.
    if cart_items or "cartItems" not in (payment.metadata_ or {}):
        updates["cartItems"] = cart_items or []
    _merge_metadata(payment, **updates)
    if commit:
        db.commit()
        db.refresh(payment)
    else:
        db.flush()
    return payment


def log_payment_captured(
    db: Session,
    order_id: str,
    gateway_response: dict[str, Any],
    subscription_ids: list[int],
    user_id: Optional[int] = None,
    commit: bool = True,
) -> Optional[models.Payment]:
    payment = find_payment_by_order_id(db, order_id)
    if payment is None:
        return None

    payment.razorpay_payment_id = gateway_response.get("razorpay_payment_id")
    payment.status = PAYMENT_CAPTURED
    payment.payment_method = gateway_response.get("method") or payment.payment_method or "razorpay"
    payment.subscription_ids = list(subscription_ids)
    if user_id:
        payment.user_id = user_id
    _merge_metadata(
        payment,
        razorpayResponse={k: v for k, v in gateway_response.items() if k != "razorpay_signature"},
        paymentVerifiedAt=utcnow().isoformat(),
    )
    if commit:
        db.commit()
        db.refresh(payment)
    else:
        db.flush()
    return payment


def log_payment_cancelled(
    db: Session,
    order_id: str,
    reason: str,
    user_id: Optional[int] = None,
    commit: bool = True,
) -> Optional[models.Payment]:
    payment = find_payment_by_order_id(db, order_id)
    if payment is None:
        return None
    if payment.status == PAYMENT_CAPTURED:
        logger.warning("Ignoring cancellation for captured order_id=%s", order_id)
        return payment

    payment.status = PAYMENT_CANCELLED
    if user_id and not payment.user_id:
        payment.user_id = user_id
    _merge_metadata(payment, cancelReason=reason, cancelledAt=utcnow().isoformat())
    if commit:
        db.commit()
        db.refresh(payment)
    else:
        db.flush()
    return payment
