from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class PaymentResponsePayload(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    method: Optional[str] = None

    class Config:
        extra = "allow"


class CartItem(BaseModel):
    product_id: int = Field(alias="productId")
    duration: str = Field(min_length=1)

    class Config:
        populate_by_name = True
        extra = "allow"


class PromoDetails(BaseModel):
    code: Optional[str] = None
    discount_amount: float = Field(default=0, alias="discountAmount", ge=0)

    class Config:
        populate_by_name = True
        extra = "allow"


class VerifyPaymentRequest(BaseModel):
    payment_response: PaymentResponsePayload = Field(alias="paymentResponse")
    cart_items: List[CartItem] = Field(alias="cartItems", min_length=1)
    promo_code: Optional[str] = Field(default=None, alias="promoCode")
    promo_details: Optional[PromoDetails] = Field(default=None, alias="promoDetails")

    class Config:
        populate_by_name = True

    @field_validator("promo_code")
    @classmethod
    def normalize_promo_code(cls, value: Optional[str]) -> Optional[str]:
        code = (value or "").strip().upper()
        return code or None


class CreateOrderRequest(BaseModel):
    cart_items: List[CartItem] = Field(alias="cartItems", min_length=1)
    currency: str = "INR"
    promo_code: Optional[str] = Field(default=None, alias="promoCode")

    class Config:
        populate_by_name = True

    @field_validator("promo_code")
    @classmethod
    def normalize_promo_code(cls, value: Optional[str]) -> Optional[str]:
        code = (value or "").strip().upper()
        return code or None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return (value or "INR").strip().upper() or "INR"


class PaymentFailureRequest(BaseModel):
    order_id: str = Field(alias="orderId", min_length=1)
    cart_items: List[dict] = Field(default_factory=list, alias="cartItems")
    error_data: Optional[dict] = Field(default=None, alias="errorData")
    reason: str = "Payment failed"

    class Config:
        populate_by_name = True


class PaymentCancelRequest(BaseModel):
    order_id: str = Field(alias="orderId", min_length=1)
    cart_items: List[dict] = Field(default_factory=list, alias="cartItems")
    reason: str = "User cancelled"

    class Config:
        populate_by_name = True


class PaymentCartItemSnapshot(BaseModel):
    """Per-item pricing captured when the gateway order was created."""

    product_id: Optional[int] = Field(default=None, alias="productId")
    duration: Optional[str] = None
    product_name: Optional[str] = Field(default=None, alias="productName")
    actual_price: float = Field(default=0, alias="actualPrice")
    discounted_price: Optional[float] = Field(default=None, alias="discountedPrice")
    discount_applied: float = Field(default=0, alias="discountApplied")
    promo_code: Optional[str] = Field(default=None, alias="promoCode")

    class Config:
        populate_by_name = True
        extra = "allow"


class SubscriptionMetadata(BaseModel):
    """Audit trail stored alongside each subscription row."""

    payment_method: str = Field(default="razorpay", alias="paymentMethod")
    payment_verified_at: datetime = Field(alias="paymentVerifiedAt")
    cart_item_index: int = Field(alias="cartItemIndex")
    previous_subscription_end: Optional[datetime] = Field(default=None, alias="previousSubscriptionEnd")
    initial_status: Literal["active", "expiresoon", "expired"] = Field(alias="initialStatus")
    should_notify_on_create: bool = Field(default=False, alias="shouldNotifyOnCreate")
    promo_code: Optional[str] = Field(default=None, alias="promoCode")
    discount_amount: float = Field(default=0, alias="discountAmount")
    renewal_type: Literal["contiguous", "fresh"] = Field(alias="renewalType")
    gap_in_days: int = Field(default=0, alias="gapInDays")
    resolver_fallback: bool = Field(default=False, alias="resolverFallback")

    class Config:
        populate_by_name = True

    def to_column(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    email: str
    name: Optional[str] = None


class InvoiceEmailStatus(BaseModel):
    sent: bool = False
    attempted: bool = False
    error: Optional[str] = None
    to: Optional[str] = None
    timestamp: str


class VerifySummary(BaseModel):
    total_subscriptions: int = Field(alias="totalSubscriptions")
    total_amount: float = Field(alias="totalAmount")
    tax_amount: float = Field(alias="taxAmount")
    subtotal: float

    class Config:
        populate_by_name = True


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str
    payment_id: str = Field(alias="paymentId")
    order_id: str = Field(alias="orderId")
    created_subscription_ids: List[int] = Field(alias="createdSubscriptionIds")
    payment_record_id: Optional[int] = Field(default=None, alias="paymentRecordId")
    invoice_email: InvoiceEmailStatus = Field(alias="invoiceEmail")
    amount: float
    summary: VerifySummary
    timestamp: str

    class Config:
        populate_by_name = True


class NotificationResponse(BaseModel):
    id: int
    subscription_id: Optional[int] = None
    title: str
    message: str
    notification_type: str
    triggered_by: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int
