import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app import models
from app.subscriptions import (
    STATUS_ACTIVE,
    STATUS_EXPIRES_SOON,
    RenewalCheck,
    can_renew_contiguously,
    generate_chain_id,
    normalize_datetime,
)

logger = logging.getLogger(__name__)

RenewalOracle = Callable[[Session, int, int, datetime], RenewalCheck]


@dataclass
class RenewalResolution:
    is_contiguous_renewal: bool
    effective_start_date: datetime
    contiguous_chain_id: str
    gap_in_days: int
    previous_subscription: Optional[models.Subscription]
    is_renewal: bool
    renewed_from_id: Optional[int]
    coverage_start: datetime
    fallback_used: bool = False

    @property
    def renewal_type(self) -> str:
        return "contiguous" if self.is_contiguous_renewal else "fresh"


def _find_unexpired_subscription(
    db: Session,
    user_id: int,
    product_id: int,
    now: datetime,
) -> Optional[models.Subscription]:
    return (
        db.query(models.Subscription)
        .filter(
            models.Subscription.user_id == user_id,
            models.Subscription.product_id == product_id,
            models.Subscription.status.in_((STATUS_ACTIVE, STATUS_EXPIRES_SOON)),
            models.Subscription.end_date > now,
        )
        .order_by(models.Subscription.end_date.desc(), models.Subscription.id.desc())
        .first()
    )


def _check_contiguity(
    db: Session,
    user_id: int,
    product_id: int,
    now: datetime,
    oracle: RenewalOracle,
) -> tuple[Optional[RenewalCheck], Optional[str]]:
    try:
        # A failed lookup must not abort the surrounding checkout transaction.
        with db.begin_nested():
            check = oracle(db, user_id, product_id, now)
    except Exception:
        logger.warning(
            "Renewal contiguity check failed user_id=%s product_id=%s; starting a fresh chain",
            user_id,
            product_id,
            exc_info=True,
        )
        return None, generate_chain_id(user_id, product_id)

    if check.is_contiguous and check.previous_subscription is not None:
        chain_id = check.previous_subscription.contiguous_chain_id or generate_chain_id(user_id, product_id, now)
    else:
        chain_id = generate_chain_id(user_id, product_id, now)
    return check, chain_id


def resolve_renewal(
    db: Session,
    user_id: int,
    product_id: int,
    now: datetime,
    oracle: RenewalOracle = can_renew_contiguously,
) -> RenewalResolution:
    """Work out where a new subscription's coverage starts and which chain it joins.

    The stored ``start_date`` is always ``now``; ``coverage_start`` is the later of
    ``now`` and the end of any unexpired predecessor, so renewing early never loses
    paid time. When the contiguity oracle fails the purchase still goes through as
    a fresh chain with ``fallback_used`` set.
    """
    check, chain_id = _check_contiguity(db, user_id, product_id, now, oracle)
    fallback_used = check is None

    is_contiguous = bool(check and check.is_contiguous and check.previous_subscription is not None)
    coverage_start = now
    is_renewal = False
    renewed_from_id = None
    previous = None

    if is_contiguous:
        previous = check.previous_subscription
        previous_end = normalize_datetime(previous.end_date)
        if previous_end > now:
            coverage_start = previous_end
        is_renewal = True
        renewed_from_id = previous.id
    else:
        # Runs even when the oracle failed: never drop time left on a paid subscription.
        existing = _find_unexpired_subscription(db, user_id, product_id, now)
        if existing is not None:
            coverage_start = normalize_datetime(existing.end_date)
            is_renewal = True
            renewed_from_id = existing.id
            previous = existing

    effective_start = now
    if is_contiguous:
        effective_start = check.effective_start_date or now

    return RenewalResolution(
        is_contiguous_renewal=is_contiguous,
        effective_start_date=effective_start,
        contiguous_chain_id=chain_id,
        gap_in_days=check.gap_in_days if check else 0,
        previous_subscription=previous,
        is_renewal=is_renewal,
        renewed_from_id=renewed_from_id,
        coverage_start=coverage_start,
        fallback_used=fallback_used,
    )
