import hashlib
import hmac
import os

from app.errors import MissingConfiguration


def razorpay_key_secret() -> str:
    """Return the Razorpay key secret or fail fast when it is not configured."""
    secret = os.getenv("RAZORPAY_KEY_SECRET", "").strip()
    if not secret:
        raise MissingConfiguration("Payment gateway secret is not configured")
    return secret


def compute_order_signature(order_id: str, payment_id: str, secret: str) -> str:
    signed_payload = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_order_signature(order_id: str, payment_id: str, signature: str | None, secret: str) -> bool:
    """
    Constant-time check of a Razorpay checkout signature.
    Empty identifiers or signatures never verify.
    """
    if not order_id or not payment_id or not signature or not secret:
        return False
    expected = compute_order_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature)
