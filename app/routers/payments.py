import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app import models, schemas
from app.auth import get_current_user
from app.database import get_db
from app.errors import (
    CheckoutError,
    PaymentCaptureUpdateFailed,
    PaymentNotFound,
    PaymentVerificationFailed,
    utc_timestamp,
)
from app.payments import find_payment_by_order_id, log_payment_cancelled, log_payment_failure
from app.services.checkout import apply_verified_payment, verify_payment_signature
from app.services.orders import create_checkout_order
from app.services.post_commit import run_checkout_side_effects

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)

VERIFY_SUCCESS_MESSAGE = "Payment verified and subscriptions created successfully"


@router.post("/create-order")
def create_order(
    payload: schemas.CreateOrderRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return create_checkout_order(db, current_user, payload)
    except CheckoutError:
        raise
    except Exception as exc:
        db.rollback()
        logger.exception("Razorpay order creation failed user_id=%s", current_user.id)
        raise CheckoutError("Failed to create order") from exc


@router.post("/verify", response_model=schemas.VerifyPaymentResponse)
def verify_payment(
    payload: schemas.VerifyPaymentRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        verify_payment_signature(db, payload)
        result = apply_verified_payment(db, current_user.id, payload)
    except CheckoutError:
        raise
    except Exception as exc:
        logger.exception(
            "Payment verification failed order_id=%s user_id=%s",
            payload.payment_response.razorpay_order_id,
            current_user.id,
        )
        raise PaymentVerificationFailed(f"Payment verification failed: {exc}") from exc

    invoice_status, _ = run_checkout_side_effects(current_user, result)

    response = schemas.VerifyPaymentResponse(
        message=VERIFY_SUCCESS_MESSAGE,
        payment_id=result.payment_id,
        order_id=result.order_id,
        created_subscription_ids=result.created_subscription_ids,
        payment_record_id=result.payment.id if result.payment is not None else None,
        invoice_email=invoice_status,
        amount=float(result.total),
        summary=schemas.VerifySummary(
            total_subscriptions=len(result.created),
            total_amount=float(result.total),
            tax_amount=float(result.tax),
            subtotal=float(result.subtotal),
        ),
        timestamp=utc_timestamp(),
    )
    if result.capture_failed:
        raise PaymentCaptureUpdateFailed(
            body=response.model_dump(mode="json", by_alias=True),
            details=f"Subscriptions created but payment {result.order_id} was not marked captured",
        )
    return response


@router.post("/fail")
def log_failed_payment(
    payload: schemas.PaymentFailureRequest,
    db: Session = Depends(get_db),
):
    payment = log_payment_failure(db, payload.order_id, payload.error_data, payload.cart_items)
    logger.info("Payment failure logged order_id=%s reason=%s", payload.order_id, payload.reason)
    return {
        "success": True,
        "message": "Payment failure logged",
        "paymentId": payment.id,
        "orderId": payload.order_id,
        "reason": payload.reason,
        "errorDetails": payload.error_data,
    }


@router.post("/cancel")
def cancel_payment(
    payload: schemas.PaymentCancelRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payment = find_payment_by_order_id(db, payload.order_id)
    if payment is None or (payment.user_id and payment.user_id != current_user.id):
        raise PaymentNotFound()

    payment = log_payment_cancelled(db, payload.order_id, payload.reason, user_id=current_user.id)
    return {
        "success": True,
        "message": "Payment cancelled",
        "paymentId": payment.id,
        "orderId": payload.order_id,
        "reason": payload.reason,
        "status": payment.status,
    }
