import logging
import os
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import requests
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app import models
from app.errors import GatewayError, MissingConfiguration, OrderAmountInvalid, ProductUnavailable, VariantUnavailable
from app.payments import create_payment_record, tax_rate, to_money
from app.schemas import CreateOrderRequest
from app.subscriptions import normalize_datetime, utcnow

logger = logging.getLogger(__name__)

DISCOUNT_FLAT = "flat"
DISCOUNT_PERCENTAGE = "percentage"
MIN_CHARGEABLE_PAISE = 100


def razorpay_api_base() -> str:
    return os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").strip().rstrip("/")


def _razorpay_credentials() -> tuple[str, str]:
    key_id = os.getenv("RAZORPAY_KEY_ID", "").strip()
    key_secret = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
    if not key_id or not key_secret:
        raise MissingConfiguration("Payment gateway configuration error")
    return key_id, key_secret


def _razorpay_request(
    method: str,
    path: str,
    key_id: str,
    key_secret: str,
    json_payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    url = f"{razorpay_api_base()}/{path.lstrip('/')}"
    try:
        response = requests.request(
            method=method.upper(),
            url=url,
            auth=(key_id, key_secret),
            json=json_payload,
            timeout=15,
        )
    except requests.RequestException as exc:
        raise GatewayError(f"Failed to contact Razorpay: {str(exc)}")

    if response.status_code >= 400:
        description = None
        try:
            description = (response.json().get("error") or {}).get("description")
        except (ValueError, AttributeError):
            pass
        logger.warning("Razorpay %s %s -> %s: %s", method, path, response.status_code, description)
        raise GatewayError(description or GatewayError.error)

    try:
        payload = response.json()
    except ValueError:
        raise GatewayError("Invalid response received from Razorpay.")

    if not isinstance(payload, dict):
        raise GatewayError("Unexpected response format from Razorpay.")
    return payload


def _promo_is_usable(promo: models.PromoCode, now: datetime) -> bool:
    valid_from = normalize_datetime(promo.valid_from)
    valid_until = normalize_datetime(promo.valid_until)
    if valid_from and now < valid_from:
        return False
    if valid_until and now > valid_until:
        return False
    if promo.usage_limit is not None and (promo.usage_count or 0) >= promo.usage_limit:
        return False
    return True


def _find_promo(db: Session, product_id: int, code: str) -> Optional[models.PromoCode]:
    # Product-scoped codes win over global ones.
    return (
        db.query(models.PromoCode)
        .filter(
            models.PromoCode.code == code,
            models.PromoCode.is_active.is_(True),
            or_(models.PromoCode.product_id == product_id, models.PromoCode.product_id.is_(None)),
        )
        .order_by(models.PromoCode.product_id.is_(None), models.PromoCode.id)
        .first()
    )


def promo_discount(promo: models.PromoCode, price: Decimal) -> Decimal:
    if promo.discount_type == DISCOUNT_PERCENTAGE:
        discount = price * to_money(promo.discount_value) / Decimal("100")
    elif promo.discount_type == DISCOUNT_FLAT:
        discount = to_money(promo.discount_value)
    else:
        discount = Decimal("0")
    return to_money(min(max(discount, Decimal("0")), price))


def create_checkout_order(db: Session, user: models.User, payload: CreateOrderRequest) -> dict[str, Any]:
    """Price the cart from the catalog, open a Razorpay order and record it."""
    key_id, key_secret = _razorpay_credentials()
    now = utcnow()

    validated_items = []
    subtotal = Decimal("0")
    applied_discount = Decimal("0")
    applied_code = None

    for index, item in enumerate(payload.cart_items):
        product = (
            db.query(models.Product)
            .filter(models.Product.id == item.product_id, models.Product.is_active.is_(True))
            .first()
        )
        if product is None:
            raise ProductUnavailable(
                f'Invalid product: Product "{item.product_id}" not found or inactive',
                failed_item_index=index,
            )
        variant = next(
            (v for v in product.variants if v.duration == item.duration and v.is_active is not False),
            None,
        )
        if variant is None:
            raise VariantUnavailable(
                f'Invalid product: Variant "{item.duration}" not available for product "{product.heading}"',
                failed_item_index=index,
            )

        price = to_money(variant.price)
        discount = Decimal("0")
        if payload.promo_code:
            promo = _find_promo(db, product.id, payload.promo_code)
            if promo is not None and _promo_is_usable(promo, now):
                discount = promo_discount(promo, price)
                applied_code = promo.code

        paid = price - discount
        subtotal += paid
        applied_discount += discount
        validated_items.append(
            {
                **item.model_dump(mode="json", by_alias=True),
                "productName": product.heading,
                "actualPrice": float(price),
                "discountedPrice": float(paid),
                "discountApplied": float(discount),
                "promoCode": payload.promo_code if discount > 0 else None,
            }
        )

    tax_amount = to_money(subtotal * tax_rate())
    total = to_money(subtotal + tax_amount)
    amount_paise = int(total * 100)
    if 0 < amount_paise < MIN_CHARGEABLE_PAISE:
        raise OrderAmountInvalid("Amount too small for payment processing")

    order = _razorpay_request(
        method="POST",
        path="/orders",
        key_id=key_id,
        key_secret=key_secret,
        json_payload={
            "amount": amount_paise,
            "currency": payload.currency,
            "receipt": f"receipt_{int(time.time() * 1000)}",
            "payment_capture": 1,
            "notes": {
                "user_id": str(user.id),
                "items_count": len(validated_items),
                "subtotal": float(subtotal),
                "tax": float(tax_amount),
                "total": float(total),
                "promo_code": applied_code or "",
                "discount_amount": float(applied_discount),
            },
        },
    )
    if not order.get("id"):
        raise GatewayError("Unexpected response format from Razorpay.")

    payment = create_payment_record(db, order, validated_items, user_id=user.id)
    logger.info(
        "Created order_id=%s user_id=%s items=%s total=%s",
        order["id"],
        user.id,
        len(validated_items),
        total,
    )

    return {
        "success": True,
        "orderId": order["id"],
        "amount": order.get("amount", amount_paise),
        "currency": order.get("currency", payload.currency),
        "receipt": order.get("receipt"),
        "keyId": key_id,
        "paymentRecordId": payment.id,
        "summary": {
            "subtotal": float(subtotal),
            "taxAmount": float(tax_amount),
            "totalAmount": float(total),
            "totalAmountInPaise": amount_paise,
            "itemsCount": len(validated_items),
            "discountAmount": float(applied_discount),
            "promoCode": applied_code,
        },
    }
