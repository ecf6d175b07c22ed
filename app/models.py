from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=False)
    mobile = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="user")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    heading = Column(String, nullable=False)
    short_description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.id",
    )
    promo_codes = relationship("PromoCode", back_populates="product", cascade="all, delete-orphan")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    duration = Column(String, nullable=False)  # display label, e.g. "1 Month"
    duration_value = Column(Integer, nullable=False, default=1)
    duration_unit = Column(String, nullable=False, default="months")  # minutes|hours|days|weeks|months|years
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True)

    product = relationship("Product", back_populates="variants")


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (UniqueConstraint("product_id", "code", name="uq_promo_codes_product_code"),)

    id = Column(Integer, primary_key=True, index=True)
    # NULL product_id means a global code usable on any product.
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True, index=True)
    code = Column(String, nullable=False, index=True)
    discount_type = Column(String, nullable=False, default="flat")  # flat|percentage
    discount_value = Column(Numeric(10, 2), nullable=False, default=0)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)

    product = relationship("Product", back_populates="promo_codes")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("payment_id", "product_id", name="uq_subscriptions_payment_product"),
        Index(
            "uq_subscriptions_latest_per_product",
            "user_id",
            "product_id",
            unique=True,
            sqlite_where=text("is_latest = 1"),
            postgresql_where=text("is_latest"),
        ),
        Index("ix_subscriptions_user_product_end", "user_id", "product_id", "end_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot of the purchased plan; catalog changes never rewrite history.
    variant_duration = Column(String, nullable=False)
    variant_duration_value = Column(Integer, nullable=False)
    variant_duration_unit = Column(String, nullable=False)
    variant_price = Column(Numeric(10, 2), nullable=False)

    original_price = Column(Numeric(10, 2), nullable=False, default=0)
    discount_applied = Column(Numeric(10, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False, index=True)
    original_start_date = Column(DateTime, nullable=True)

    status = Column(String, nullable=False, default="active")  # active|expiresoon|expired
    payment_status = Column(String, nullable=False, default="pending")

    is_renewal = Column(Boolean, nullable=False, default=False)
    renewed_from_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    contiguous_chain_id = Column(String, nullable=True, index=True)
    is_latest = Column(Boolean, nullable=False, default=True)
    replaced_subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)

    payment_id = Column(String, nullable=True, index=True)
    transaction_id = Column(String, nullable=True, index=True)

    # "metadata" is reserved on declarative classes.
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    product = relationship("Product")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    razorpay_order_id = Column(String, unique=True, index=True, nullable=False)
    razorpay_payment_id = Column(String, nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String, nullable=False, default="INR")
    status = Column(String, nullable=False, default="created")
    payment_method = Column(String, nullable=False, default="razorpay")
    description = Column(String, nullable=True)
    subscription_ids = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User")


class UserNotification(Base):
    __tablename__ = "user_notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    notification_type = Column(String, nullable=False, default="general", index=True)
    triggered_by = Column(String, nullable=False, default="system")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)

    subscription = relationship("Subscription")
