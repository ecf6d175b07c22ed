from datetime import datetime
from decimal import Decimal

from app import models
from app.renewals import resolve_renewal
from app.subscriptions import RenewalCheck


def _subscription(db, user, product, start, end, chain_id=None, status="active"):
    subscription = models.Subscription(
        user_id=user.id,
        product_id=product.id,
        variant_duration="1 Month",
        variant_duration_value=1,
        variant_duration_unit="months",
        variant_price=Decimal("100.00"),
        start_date=start,
        end_date=end,
        original_start_date=start,
        status=status,
        payment_status="completed",
        contiguous_chain_id=chain_id,
        is_latest=True,
        metadata_={},
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def _failing_oracle(db, user_id, product_id, at):
    raise RuntimeError("subscriptions store unavailable")


def test_first_purchase_starts_fresh_chain(db, make_user, make_product):
    user, product = make_user(), make_product()
    now = datetime(2024, 1, 15)

    resolution = resolve_renewal(db, user.id, product.id, now)

    assert resolution.renewal_type == "fresh"
    assert resolution.is_renewal is False
    assert resolution.coverage_start == now
    assert resolution.effective_start_date == now
    assert resolution.contiguous_chain_id == f"{user.id}_{product.id}_1705276800000"
    assert resolution.fallback_used is False


def test_early_renewal_extends_from_previous_end(db, make_user, make_product):
    user, product = make_user(), make_product()
    previous = _subscription(db, user, product, datetime(2024, 1, 15), datetime(2024, 2, 15), chain_id="chain-a")

    resolution = resolve_renewal(db, user.id, product.id, datetime(2024, 2, 10))

    assert resolution.is_contiguous_renewal is True
    assert resolution.coverage_start == datetime(2024, 2, 15)
    assert resolution.contiguous_chain_id == "chain-a"
    assert resolution.renewed_from_id == previous.id
    assert resolution.effective_start_date == datetime(2024, 1, 15)


def test_renewal_inside_grace_starts_now(db, make_user, make_product):
    user, product = make_user(), make_product()
    _subscription(db, user, product, datetime(2024, 1, 15), datetime(2024, 2, 15), chain_id="chain-a")

    resolution = resolve_renewal(db, user.id, product.id, datetime(2024, 2, 20))

    assert resolution.is_contiguous_renewal is True
    assert resolution.gap_in_days == 5
    assert resolution.coverage_start == datetime(2024, 2, 20)
    assert resolution.contiguous_chain_id == "chain-a"


def test_oracle_failure_still_extends_unexpired_subscription(db, make_user, make_product):
    user, product = make_user(), make_product()
    existing = _subscription(db, user, product, datetime(2024, 1, 15), datetime(2024, 2, 15), chain_id="chain-a")

    resolution = resolve_renewal(db, user.id, product.id, datetime(2024, 2, 10), oracle=_failing_oracle)

    assert resolution.fallback_used is True
    assert resolution.is_contiguous_renewal is False
    assert resolution.renewal_type == "fresh"
    assert resolution.coverage_start == datetime(2024, 2, 15)
    assert resolution.is_renewal is True
    assert resolution.renewed_from_id == existing.id
    assert resolution.contiguous_chain_id != "chain-a"
    assert resolution.contiguous_chain_id.startswith(f"{user.id}_{product.id}_")


def test_oracle_failure_without_history_is_plain_fresh_purchase(db, make_user, make_product):
    user, product = make_user(), make_product()
    now = datetime(2024, 3, 1)

    resolution = resolve_renewal(db, user.id, product.id, now, oracle=_failing_oracle)

    assert resolution.fallback_used is True
    assert resolution.is_renewal is False
    assert resolution.coverage_start == now
    assert resolution.gap_in_days == 0


def test_contiguous_verdict_without_predecessor_is_treated_as_fresh(db, make_user, make_product):
    user, product = make_user(), make_product()
    now = datetime(2024, 3, 1)

    def _confused_oracle(db, user_id, product_id, at):
        return RenewalCheck(is_contiguous=True, previous_subscription=None, gap_in_days=0, effective_start_date=at)

    resolution = resolve_renewal(db, user.id, product.id, now, oracle=_confused_oracle)

    assert resolution.is_contiguous_renewal is False
    assert resolution.coverage_start == now


def test_oracle_failure_only_discards_its_own_work(db, make_user, make_product):
    user, product = make_user(), make_product()
    existing = _subscription(db, user, product, datetime(2024, 1, 15), datetime(2024, 2, 15), chain_id="chain-a")

    def _oracle_failing_midway(db, user_id, product_id, at):
        db.query(models.Subscription).filter(models.Subscription.id == existing.id).update(
            {models.Subscription.status: "expired"}, synchronize_session=False
        )
        raise RuntimeError("lost connection during lookup")

    resolution = resolve_renewal(db, user.id, product.id, datetime(2024, 2, 10), oracle=_oracle_failing_midway)

    assert resolution.fallback_used is True
    assert resolution.renewed_from_id == existing.id
    assert resolution.coverage_start == datetime(2024, 2, 15)
    db.expire_all()
    assert db.get(models.Subscription, existing.id).status == "active"
