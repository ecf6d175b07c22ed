import calendar
import math
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app import models

STATUS_ACTIVE = "active"
STATUS_EXPIRES_SOON = "expiresoon"
STATUS_EXPIRED = "expired"

PAYMENT_STATUS_COMPLETED = "completed"

DURATION_UNITS = ("minutes", "hours", "days", "weeks", "months", "years")

EXPIRES_SOON_MINUTES = 5
EXPIRES_SOON_HOURS = 2
EXPIRES_SOON_DAYS = 10

_SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class RenewalCheck:
    is_contiguous: bool
    previous_subscription: Optional[models.Subscription]
    gap_in_days: int
    effective_start_date: datetime


@dataclass
class StatusCheck:
    status: str
    should_notify: bool


def utcnow() -> datetime:
    """Naive UTC wall clock, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(value):
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def contiguous_grace_days() -> int:
    raw = os.getenv("CONTIGUOUS_RENEWAL_GRACE_DAYS", "7").strip()
    try:
        days = int(raw)
        if days < 0:
            raise ValueError
        return days
    except ValueError:
        return 7


def _add_months(start: datetime, months: int) -> datetime:
    # Clamp to the last day of the target month (Jan 31 + 1 month -> Feb 28/29).
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_duration(start: datetime, value: Optional[int], unit: Optional[str]) -> datetime:
    """Advance ``start`` by a plan duration using calendar-aware months and years."""
    amount = int(value or 0)
    normalized_unit = (unit or "").strip().lower()

    if normalized_unit == "minutes":
        return start + timedelta(minutes=amount)
    if normalized_unit == "hours":
        return start + timedelta(hours=amount)
    if normalized_unit == "days":
        return start + timedelta(days=amount)
    if normalized_unit == "weeks":
        return start + timedelta(weeks=amount)
    if normalized_unit == "months":
        return _add_months(start, amount)
    if normalized_unit == "years":
        return _add_months(start, amount * 12)

    # Unknown unit: advance by months, at least one.
    return _add_months(start, amount or 1)


def generate_chain_id(user_id: int, product_id: int, at: Optional[datetime] = None) -> str:
    if at is None:
        epoch_ms = int(time.time() * 1000)
    else:
        epoch_ms = int(at.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{user_id}_{product_id}_{epoch_ms}"


def can_renew_contiguously(db: Session, user_id: int, product_id: int, at: datetime) -> RenewalCheck:
    """Inspect the user's latest-ending completed subscription for the product.

    A purchase made no more than the grace window after that subscription ended (or
    any time before it ends) continues the existing chain.
    """
    latest = (
        db.query(models.Subscription)
        .filter(
            models.Subscription.user_id == user_id,
            models.Subscription.product_id == product_id,
            models.Subscription.payment_status == PAYMENT_STATUS_COMPLETED,
        )
        .order_by(models.Subscription.end_date.desc(), models.Subscription.id.desc())
        .first()
    )
    if latest is None:
        return RenewalCheck(
            is_contiguous=False,
            previous_subscription=None,
            gap_in_days=0,
            effective_start_date=at,
        )

    latest_end = normalize_datetime(latest.end_date)
    gap_seconds = (at - latest_end).total_seconds()
    gap_in_days = max(0, math.ceil(gap_seconds / _SECONDS_PER_DAY))
    is_contiguous = gap_in_days <= contiguous_grace_days()

    effective_start = at
    if is_contiguous:
        effective_start = normalize_datetime(latest.original_start_date or latest.start_date)

    return RenewalCheck(
        is_contiguous=is_contiguous,
        previous_subscription=latest,
        gap_in_days=gap_in_days,
        effective_start_date=effective_start,
    )


def classify_initial_status(end_date: datetime, duration_unit: Optional[str], now: datetime) -> StatusCheck:
    end = normalize_datetime(end_date)
    if end < now:
        return StatusCheck(status=STATUS_EXPIRED, should_notify=False)

    remaining = (end - now).total_seconds()
    minutes_remaining = math.ceil(remaining / 60)
    hours_remaining = math.ceil(remaining / 3600)
    days_remaining = math.ceil(remaining / _SECONDS_PER_DAY)

    unit = (duration_unit or "").strip().lower()
    if unit == "minutes" and 0 < minutes_remaining <= EXPIRES_SOON_MINUTES:
        return StatusCheck(status=STATUS_EXPIRES_SOON, should_notify=True)
    if unit == "hours" and 0 < hours_remaining <= EXPIRES_SOON_HOURS:
        return StatusCheck(status=STATUS_EXPIRES_SOON, should_notify=True)
    if 0 < days_remaining <= EXPIRES_SOON_DAYS:
        return StatusCheck(status=STATUS_EXPIRES_SOON, should_notify=True)
    return StatusCheck(status=STATUS_ACTIVE, should_notify=False)


def days_remaining(end_date: datetime, now: datetime) -> int:
    end = normalize_datetime(end_date)
    return math.ceil((end - now).total_seconds() / _SECONDS_PER_DAY)
