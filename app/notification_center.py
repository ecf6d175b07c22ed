import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app import models
from app.subscriptions import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_EXPIRES_SOON,
    days_remaining,
    normalize_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

NOTIFICATION_SUBSCRIPTION_ACTIVE = "subscription_active"
NOTIFICATION_SUBSCRIPTION_EXPIRING_SOON = "subscription_expiring_soon"
NOTIFICATION_SUBSCRIPTION_EXPIRED = "subscription_expired"
NOTIFICATION_GENERAL = "general"

DUPLICATE_WINDOW = timedelta(minutes=10)
# Day-based plans only get an "expiring soon" notice on these days.
EXPIRING_SOON_NOTICE_DAYS = {10, 3}
_DAY_BASED_UNITS = {"days", "months", "years"}


def _product_name(subscription: models.Subscription) -> str:
    product = subscription.product
    return (product.heading if product is not None else None) or "Product"


def _expiring_soon_message(subscription: models.Subscription, product_name: str, now: datetime) -> Optional[str]:
    end = normalize_datetime(subscription.end_date)
    remaining = (end - now).total_seconds()
    remaining_days = days_remaining(end, now)
    unit = (subscription.variant_duration_unit or "").strip().lower()

    if unit in _DAY_BASED_UNITS and remaining_days not in EXPIRING_SOON_NOTICE_DAYS:
        return None

    if remaining_days > 0:
        time_left = f"{remaining_days} days"
    elif unit == "minutes":
        time_left = f"{math.ceil(remaining / 60)} minute(s)"
    elif unit == "hours":
        time_left = f"{math.ceil(remaining / 3600)} hour(s)"
    else:
        time_left = f"{remaining_days} day(s)"
    return f'Your "{product_name}" subscription is expiring in {time_left}. Renew now to continue access.'


def _find_recent_duplicate(
    db: Session,
    subscription_id: int,
    notification_type: str,
    now: datetime,
) -> Optional[models.UserNotification]:
    return (
        db.query(models.UserNotification)
        .filter(
            models.UserNotification.subscription_id == subscription_id,
            models.UserNotification.notification_type == notification_type,
            models.UserNotification.created_at >= now - DUPLICATE_WINDOW,
        )
        .order_by(models.UserNotification.created_at.desc())
        .first()
    )


def create_status_change_notification(
    db: Session,
    subscription: models.Subscription,
    old_status: Optional[str],
    new_status: str,
    triggered_by: str = "system",
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Optional[models.UserNotification]:
    """Create the in-app notice for a subscription status transition.

    Returns the existing notification when the same kind was already sent for this
    subscription in the last ten minutes, and ``None`` when an expiring-soon notice
    is suppressed for the current day.
    """
    now = now or utcnow()
    product_name = _product_name(subscription)

    if new_status == STATUS_ACTIVE:
        notification_type = NOTIFICATION_SUBSCRIPTION_ACTIVE
        title = "Subscription Active"
        message = f'Your product "{product_name}" is active now. You can start reading your articles.'
    elif new_status == STATUS_EXPIRES_SOON:
        notification_type = NOTIFICATION_SUBSCRIPTION_EXPIRING_SOON
        title = "Subscription Expiring Soon"
        message = _expiring_soon_message(subscription, product_name, now)
        if message is None:
            logger.info(
                "Suppressing expiring-soon notification subscription_id=%s days_remaining=%s",
                subscription.id,
                days_remaining(subscription.end_date, now),
            )
            return None
    elif new_status == STATUS_EXPIRED:
        notification_type = NOTIFICATION_SUBSCRIPTION_EXPIRED
        title = "Subscription Expired"
        message = f'Your product "{product_name}" has expired. Renew to regain the access.'
    else:
        notification_type = NOTIFICATION_GENERAL
        title = "Subscription Update"
        message = f'The status of your subscription for "{product_name}" has been updated.'

    existing = _find_recent_duplicate(db, subscription.id, notification_type, now)
    if existing is not None:
        logger.info(
            "Skipping duplicate notification subscription_id=%s type=%s existing_id=%s",
            subscription.id,
            notification_type,
            existing.id,
        )
        return existing

    notification = models.UserNotification(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        title=title[:200],
        message=message,
        notification_type=notification_type,
        triggered_by=(triggered_by or "system").strip()[:100] or "system",
        metadata_={
            "oldStatus": old_status,
            "newStatus": new_status,
            "triggeredBy": triggered_by,
            "subscriptionDetails": {
                "productName": product_name,
                "startDate": normalize_datetime(subscription.start_date).isoformat(),
                "endDate": normalize_datetime(subscription.end_date).isoformat(),
            },
        },
        is_read=False,
        created_at=now,
    )
    db.add(notification)
    if commit:
        db.commit()
        db.refresh(notification)
    else:
        db.flush()
    return notification


def create_new_subscription_notification(
    db: Session,
    subscription: models.Subscription,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Optional[models.UserNotification]:
    return create_status_change_notification(
        db,
        subscription,
        old_status=None,
        new_status=STATUS_ACTIVE,
        triggered_by="payment",
        now=now,
        commit=commit,
    )


def list_user_notifications(
    db: Session,
    user_id: int,
    limit: int = 50,
    unread_only: bool = False,
    notification_type: Optional[str] = None,
) -> list[models.UserNotification]:
    safe_limit = max(1, min(int(limit or 50), 200))
    query = db.query(models.UserNotification).filter(models.UserNotification.user_id == user_id)
    if unread_only:
        query = query.filter(models.UserNotification.is_read.is_(False))
    if notification_type:
        query = query.filter(models.UserNotification.notification_type == notification_type)
    return (
        query.order_by(models.UserNotification.created_at.desc(), models.UserNotification.id.desc())
        .limit(safe_limit)
        .all()
    )


def get_unread_notification_count(db: Session, user_id: int) -> int:
    return int(
        db.query(models.UserNotification)
        .filter(
            models.UserNotification.user_id == user_id,
            models.UserNotification.is_read.is_(False),
        )
        .count()
    )


def mark_user_notification_read(
    db: Session,
    user_id: int,
    notification_id: int,
    commit: bool = True,
) -> Optional[models.UserNotification]:
    notification = (
        db.query(models.UserNotification)
        .filter(
            models.UserNotification.id == notification_id,
            models.UserNotification.user_id == user_id,
        )
        .first()
    )
    if not notification:
        return None

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        if commit:
            db.commit()
            db.refresh(notification)
        else:
            db.flush()
    return notification


def mark_all_user_notifications_read(db: Session, user_id: int, commit: bool = True) -> int:
    updated = (
        db.query(models.UserNotification)
        .filter(
            models.UserNotification.user_id == user_id,
            models.UserNotification.is_read.is_(False),
        )
        .update(
            {models.UserNotification.is_read: True, models.UserNotification.read_at: utcnow()},
            synchronize_session=False,
        )
    )
    if commit:
        db.commit()
    else:
        db.flush()
    return int(updated or 0)
