import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

PAYMENTS_PATH_PREFIX = "/api/payments"


class CheckoutError(Exception):
    """Base class for failures surfaced to checkout clients.

    Subclasses pin the HTTP status and the default user-facing message; instances
    may override the message and attach ``details`` / ``failed_item_index``.
    """

    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        error: Optional[str] = None,
        *,
        details: Any = None,
        failed_item_index: Optional[int] = None,
    ):
        self.error = error or self.error
        self.details = details
        self.failed_item_index = failed_item_index
        super().__init__(self.error)


class AuthenticationRequired(CheckoutError):
    status_code = 401
    error = "Authentication required"


class UserNotFound(CheckoutError):
    status_code = 404
    error = "User not found"


class InvalidRequestBody(CheckoutError):
    status_code = 400
    error = "Invalid request body"


class InvalidSignature(CheckoutError):
    status_code = 400
    error = "Invalid payment signature"


class MissingConfiguration(CheckoutError):
    status_code = 500
    error = "Server configuration error"


class ProductUnavailable(CheckoutError):
    status_code = 400
    error = "Product not found or inactive"


class VariantUnavailable(CheckoutError):
    status_code = 400
    error = "Selected plan is not available"


class OrderAmountInvalid(CheckoutError):
    status_code = 400
    error = "Order amount is below the minimum chargeable amount"


class OrderMismatch(CheckoutError):
    status_code = 400
    error = "Cart does not match the paid order"


class PaymentRecordMissing(CheckoutError):
    status_code = 500
    error = "Payment record not found"


class PaymentNotFound(CheckoutError):
    status_code = 404
    error = "Payment not found"


class NoSubscriptionsCreated(CheckoutError):
    status_code = 400
    error = "No subscriptions were created"


class DuplicateSubscription(CheckoutError):
    status_code = 400
    error = "Subscription already exists. Please check your subscriptions page."


class GatewayError(CheckoutError):
    status_code = 502
    error = "Unable to process Razorpay request right now."


class PaymentVerificationFailed(CheckoutError):
    status_code = 500
    error = "Payment verification failed"


class PaymentCaptureUpdateFailed(CheckoutError):
    """Subscriptions were created but the payment row could not be marked captured.

    Rendered as HTTP 200 with ``success: false`` and ``error: null``; the body still
    carries whatever was created.
    """

    status_code = 200
    error = "Payment record update failed"

    def __init__(self, error: Optional[str] = None, *, body: Optional[dict] = None, **kwargs):
        super().__init__(error, **kwargs)
        self.body = body or {}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_payload(exc: CheckoutError) -> dict:
    payload: dict[str, Any] = {"success": False, "error": exc.error}
    if exc.details is not None:
        payload["details"] = exc.details
    if exc.failed_item_index is not None:
        payload["failedItemIndex"] = exc.failed_item_index
    payload["timestamp"] = utc_timestamp()
    return payload


def _format_validation_errors(exc: RequestValidationError) -> list[str]:
    formatted = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        message = err.get("msg", "invalid value")
        formatted.append(f"{location}: {message}" if location else message)
    return formatted


def install_exception_handlers(app):
    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        if isinstance(exc, PaymentCaptureUpdateFailed):
            logger.warning(
                "Payment capture bookkeeping failed %s %s: %s",
                request.method,
                request.url.path,
                exc.details,
            )
            body = dict(exc.body)
            body.update({"success": False, "error": None, "timestamp": utc_timestamp()})
            return JSONResponse(body, status_code=200)

        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "%s %s %s -> %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.status_code,
            exc.error,
        )
        return JSONResponse(error_payload(exc), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        if not request.url.path.startswith(PAYMENTS_PATH_PREFIX):
            return await request_validation_exception_handler(request, exc)
        invalid = InvalidRequestBody(details=_format_validation_errors(exc))
        logger.info("Invalid checkout body %s %s: %s", request.method, request.url.path, invalid.details)
        return JSONResponse(error_payload(invalid), status_code=invalid.status_code)
