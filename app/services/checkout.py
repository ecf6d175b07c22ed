import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import models
from app.errors import (
    CheckoutError,
    DuplicateSubscription,
    InvalidSignature,
    NoSubscriptionsCreated,
    OrderMismatch,
    PaymentRecordMissing,
    ProductUnavailable,
    VariantUnavailable,
)
from app.payments import (
    find_payment_by_order_id,
    log_payment_captured,
    log_payment_failure,
    tax_rate,
    to_money,
)
from app.renewals import RenewalOracle, resolve_renewal
from app.schemas import (
    PaymentCartItemSnapshot,
    PaymentResponsePayload,
    SubscriptionMetadata,
    VerifyPaymentRequest,
)
from app.subscriptions import (
    PAYMENT_STATUS_COMPLETED,
    STATUS_ACTIVE,
    StatusCheck,
    add_duration,
    can_renew_contiguously,
    classify_initial_status,
    utcnow,
)
from app.utils.signature import razorpay_key_secret, verify_order_signature

logger = logging.getLogger(__name__)

StatusClassifier = Callable[[datetime, Optional[str], datetime], StatusCheck]


@dataclass
class CreatedSubscription:
    subscription_id: int
    product_id: int
    product_name: str
    duration: str
    price: Decimal
    paid_price: Decimal
    start_date: datetime
    end_date: datetime
    status: str
    should_notify: bool
    discount: Decimal = Decimal("0")


@dataclass
class CheckoutResult:
    order_id: str
    payment_id: str
    created: list[CreatedSubscription] = field(default_factory=list)
    payment: Optional[models.Payment] = None
    subtotal: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")

    @property
    def created_subscription_ids(self) -> list[int]:
        return [item.subscription_id for item in self.created]

    @property
    def capture_failed(self) -> bool:
        return self.payment is None


def _cart_dump(payload: VerifyPaymentRequest) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json", by_alias=True) for item in payload.cart_items]


def _log_failure_safe(db: Session, order_id: str, error_details: dict[str, Any], cart_items: list) -> None:
    try:
        log_payment_failure(db, order_id, error_details, cart_items)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record payment failure order_id=%s code=%s", order_id, error_details.get("code"))


def verify_payment_signature(db: Session, payload: VerifyPaymentRequest) -> None:
    """Reject checkouts whose Razorpay signature does not match; records the attempt."""
    secret = razorpay_key_secret()
    response = payload.payment_response
    if verify_order_signature(
        response.razorpay_order_id,
        response.razorpay_payment_id,
        response.razorpay_signature,
        secret,
    ):
        return

    logger.warning("Invalid payment signature order_id=%s", response.razorpay_order_id)
    _log_failure_safe(
        db,
        response.razorpay_order_id,
        {
            "code": "INVALID_SIGNATURE",
            "description": "Payment signature verification failed",
            "source": "verification",
            "step": "signature_verification",
        },
        _cart_dump(payload),
    )
    raise InvalidSignature()


def _demote_latest_subscriptions(
    db: Session,
    user_id: int,
    product_ids: list[int],
) -> dict[int, models.Subscription]:
    previously_latest: dict[int, models.Subscription] = {}
    for product_id in dict.fromkeys(product_ids):
        rows = (
            db.query(models.Subscription)
            .filter(
                models.Subscription.user_id == user_id,
                models.Subscription.product_id == product_id,
                models.Subscription.is_latest.is_(True),
            )
            .all()
        )
        for row in rows:
            row.is_latest = False
        if rows:
            previously_latest[product_id] = rows[0]
    # The partial unique index needs the flips written before new rows go in.
    db.flush()
    return previously_latest


def _increment_promo_usage(db: Session, payload: VerifyPaymentRequest) -> Optional[models.PromoCode]:
    code = payload.promo_code
    if not code:
        return None

    # First product owning the code is credited once per order; a global code
    # with the same name is only credited when no product owns it.
    promo = None
    for item in payload.cart_items:
        promo = (
            db.query(models.PromoCode)
            .filter(
                models.PromoCode.product_id == item.product_id,
                models.PromoCode.code == code,
            )
            .first()
        )
        if promo is not None:
            break
    if promo is None:
        promo = (
            db.query(models.PromoCode)
            .filter(models.PromoCode.product_id.is_(None), models.PromoCode.code == code)
            .first()
        )
    if promo is None:
        return None

    db.query(models.PromoCode).filter(models.PromoCode.id == promo.id).update(
        {models.PromoCode.usage_count: models.PromoCode.usage_count + 1},
        synchronize_session=False,
    )
    return promo


def _item_snapshot(payment: models.Payment, index: int) -> PaymentCartItemSnapshot:
    snapshots = (payment.metadata_ or {}).get("cartItems") or []
    if index < len(snapshots) and isinstance(snapshots[index], dict):
        return PaymentCartItemSnapshot.model_validate(snapshots[index])
    return PaymentCartItemSnapshot()


def _check_order_matches(payment: models.Payment, user_id: int, items_count: int) -> None:
    if payment.user_id is not None and payment.user_id != user_id:
        logger.warning(
            "Order owner mismatch order_id=%s owner=%s caller=%s",
            payment.razorpay_order_id,
            payment.user_id,
            user_id,
        )
        raise OrderMismatch("Order does not belong to this user")

    snapshots = (payment.metadata_ or {}).get("cartItems") or []
    if snapshots and len(snapshots) != items_count:
        logger.warning(
            "Cart size mismatch order_id=%s ordered=%s sent=%s",
            payment.razorpay_order_id,
            len(snapshots),
            items_count,
        )
        raise OrderMismatch()


def _classify_status(
    classifier: StatusClassifier,
    end_date: datetime,
    duration_unit: Optional[str],
    now: datetime,
) -> StatusCheck:
    try:
        return classifier(end_date, duration_unit, now)
    except Exception:
        logger.warning("Status classification failed end_date=%s; defaulting to active", end_date, exc_info=True)
        return StatusCheck(status=STATUS_ACTIVE, should_notify=False)


def _load_product_and_variant(db: Session, product_id: int, duration: str):
    product = (
        db.query(models.Product)
        .filter(models.Product.id == product_id, models.Product.is_active.is_(True))
        .first()
    )
    if product is None:
        raise ProductUnavailable(f'Product "{product_id}" not found or inactive')

    variant = next(
        (v for v in product.variants if v.duration == duration and v.is_active is not False),
        None,
    )
    if variant is None:
        raise VariantUnavailable(f'Variant "{duration}" not available for product')
    return product, variant


def _create_item_subscription(
    db: Session,
    user_id: int,
    index: int,
    item,
    payload: VerifyPaymentRequest,
    payment: models.Payment,
    previously_latest: dict[int, models.Subscription],
    now: datetime,
    renewal_oracle: RenewalOracle,
    status_classifier: StatusClassifier,
) -> tuple[CreatedSubscription, Decimal]:
    product, variant = _load_product_and_variant(db, item.product_id, item.duration)
    base_price = to_money(variant.price)

    # Pricing comes from the order snapshot; it is what the gateway charged.
    snapshot = _item_snapshot(payment, index)
    if (snapshot.product_id is not None and snapshot.product_id != product.id) or (
        snapshot.duration is not None and snapshot.duration != variant.duration
    ):
        logger.warning(
            "Cart item %s does not match order_id=%s: sent product_id=%s duration=%s, ordered %s %s",
            index,
            payment.razorpay_order_id,
            product.id,
            variant.duration,
            snapshot.product_id,
            snapshot.duration,
        )
        raise OrderMismatch(failed_item_index=index)
    discount = to_money(snapshot.discount_applied)
    original_price = to_money(snapshot.actual_price) if snapshot.actual_price else base_price
    if snapshot.discounted_price is not None:
        paid_price = to_money(snapshot.discounted_price)
    else:
        paid_price = base_price - discount

    resolution = resolve_renewal(db, user_id, product.id, now, oracle=renewal_oracle)
    end_date = add_duration(resolution.coverage_start, variant.duration_value, variant.duration_unit)
    status_check = _classify_status(status_classifier, end_date, variant.duration_unit, now)

    replaced = previously_latest.get(product.id)
    promo_details = payload.promo_details
    metadata = SubscriptionMetadata(
        payment_method=payload.payment_response.method or "razorpay",
        payment_verified_at=now,
        cart_item_index=index,
        previous_subscription_end=replaced.end_date if replaced is not None else None,
        initial_status=status_check.status,
        should_notify_on_create=status_check.should_notify,
        promo_code=snapshot.promo_code or (promo_details.code if promo_details else None),
        discount_amount=float(discount),
        renewal_type=resolution.renewal_type,
        gap_in_days=resolution.gap_in_days,
        resolver_fallback=resolution.fallback_used,
    )

    subscription = models.Subscription(
        user_id=user_id,
        product_id=product.id,
        variant_duration=variant.duration,
        variant_duration_value=variant.duration_value,
        variant_duration_unit=variant.duration_unit,
        variant_price=base_price,
        original_price=original_price,
        discount_applied=discount,
        amount_paid=paid_price,
        start_date=now,
        end_date=end_date,
        original_start_date=resolution.effective_start_date,
        status=status_check.status,
        payment_status=PAYMENT_STATUS_COMPLETED,
        is_renewal=resolution.is_renewal,
        renewed_from_id=resolution.renewed_from_id,
        contiguous_chain_id=resolution.contiguous_chain_id,
        is_latest=True,
        replaced_subscription_id=replaced.id if replaced is not None else None,
        payment_id=payload.payment_response.razorpay_payment_id,
        transaction_id=payload.payment_response.razorpay_order_id,
        metadata_=metadata.to_column(),
    )
    db.add(subscription)
    db.flush()

    logger.info(
        "Created subscription id=%s user_id=%s product_id=%s renewal=%s chain=%s end=%s",
        subscription.id,
        user_id,
        product.id,
        resolution.renewal_type,
        resolution.contiguous_chain_id,
        end_date.isoformat(),
    )
    created = CreatedSubscription(
        subscription_id=subscription.id,
        product_id=product.id,
        product_name=product.heading,
        duration=variant.duration,
        price=original_price,
        paid_price=paid_price,
        start_date=now,
        end_date=end_date,
        status=status_check.status,
        should_notify=status_check.should_notify,
        discount=discount,
    )
    return created, base_price


def _gateway_response(payment_response: PaymentResponsePayload) -> dict[str, Any]:
    return payment_response.model_dump(mode="json", exclude_none=True)


def _capture_in_savepoint(
    db: Session,
    order_id: str,
    payment_response: PaymentResponsePayload,
    subscription_ids: list[int],
    user_id: int,
) -> Optional[models.Payment]:
    try:
        with db.begin_nested():
            return log_payment_captured(
                db,
                order_id,
                _gateway_response(payment_response),
                subscription_ids,
                user_id,
                commit=False,
            )
    except Exception:
        logger.warning("Payment capture update failed inside transaction order_id=%s", order_id, exc_info=True)
        return None


def _retry_capture(
    db: Session,
    order_id: str,
    payment_response: PaymentResponsePayload,
    subscription_ids: list[int],
    user_id: int,
) -> Optional[models.Payment]:
    try:
        return log_payment_captured(db, order_id, _gateway_response(payment_response), subscription_ids, user_id)
    except Exception:
        db.rollback()
        logger.exception("Payment capture retry failed order_id=%s; subscriptions already committed", order_id)
        return None


def apply_verified_payment(
    db: Session,
    user_id: int,
    payload: VerifyPaymentRequest,
    now: Optional[datetime] = None,
    renewal_oracle: RenewalOracle = can_renew_contiguously,
    status_classifier: StatusClassifier = classify_initial_status,
) -> CheckoutResult:
    """Create every subscription for a verified order in one transaction.

    Either all subscriptions, the promo usage increment and the latest-flag flips
    commit together, or nothing does. Marking the payment captured is bookkeeping:
    it runs in a savepoint and is retried once after commit, and its failure is
    reported through ``CheckoutResult.capture_failed`` instead of aborting.
    """
    now = now or utcnow()
    response = payload.payment_response
    order_id = response.razorpay_order_id
    cart_items = _cart_dump(payload)
    result = CheckoutResult(order_id=order_id, payment_id=response.razorpay_payment_id)

    try:
        previously_latest = _demote_latest_subscriptions(
            db, user_id, [item.product_id for item in payload.cart_items]
        )
        _increment_promo_usage(db, payload)

        payment = find_payment_by_order_id(db, order_id)
        if payment is None:
            raise PaymentRecordMissing(f"Payment record not found for order {order_id}")
        _check_order_matches(payment, user_id, len(payload.cart_items))

        for index, item in enumerate(payload.cart_items):
            try:
                created, base_price = _create_item_subscription(
                    db,
                    user_id,
                    index,
                    item,
                    payload,
                    payment,
                    previously_latest,
                    now,
                    renewal_oracle,
                    status_classifier,
                )
            except (ProductUnavailable, VariantUnavailable) as exc:
                db.rollback()
                logger.warning("Failed to process cart item %s order_id=%s: %s", index, order_id, exc.error)
                _log_failure_safe(
                    db,
                    order_id,
                    {
                        "code": "ITEM_PROCESSING_FAILED",
                        "description": f"Failed to process cart item: {exc.error}",
                        "source": "subscription_creation",
                        "step": "item_processing",
                        "itemIndex": index,
                    },
                    cart_items,
                )
                exc.error = f"Failed to process item: {exc.error}"
                exc.failed_item_index = index
                raise
            except IntegrityError as exc:
                exc.failed_item_index = index
                raise
            result.created.append(created)
            result.subtotal += base_price

        if not result.created:
            db.rollback()
            _log_failure_safe(
                db,
                order_id,
                {
                    "code": "NO_SUBSCRIPTIONS_CREATED",
                    "description": "No subscriptions were created during payment processing",
                    "source": "subscription_creation",
                    "step": "final_validation",
                },
                cart_items,
            )
            raise NoSubscriptionsCreated()

        promo_details = payload.promo_details
        # Never report more discount than the order snapshot actually granted.
        granted = sum((item.discount for item in result.created), Decimal("0"))
        requested = to_money(promo_details.discount_amount if promo_details else 0)
        result.discount = min(max(requested, Decimal("0")), granted)
        taxable = max(Decimal("0"), result.subtotal - result.discount)
        result.tax = to_money(taxable * tax_rate())
        result.total = to_money(taxable + result.tax)

        result.payment = _capture_in_savepoint(db, order_id, response, result.created_subscription_ids, user_id)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Duplicate subscription detected order_id=%s: %s", order_id, exc.orig)
        raise DuplicateSubscription(failed_item_index=getattr(exc, "failed_item_index", None))
    except CheckoutError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        raise

    if result.payment is None:
        result.payment = _retry_capture(db, order_id, response, result.created_subscription_ids, user_id)

    logger.info(
        "Verified order_id=%s user_id=%s subscriptions=%s total=%s capture_failed=%s",
        order_id,
        user_id,
        result.created_subscription_ids,
        result.total,
        result.capture_failed,
    )
    return result
