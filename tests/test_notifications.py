from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import models
from app.notification_center import (
    NOTIFICATION_SUBSCRIPTION_ACTIVE,
    NOTIFICATION_SUBSCRIPTION_EXPIRING_SOON,
    create_new_subscription_notification,
    create_status_change_notification,
)

from conftest import auth_headers

NOW = datetime(2024, 1, 15, 9, 30)


def _subscription(db, user, product, end_date, unit="months", status="active"):
    subscription = models.Subscription(
        user_id=user.id,
        product_id=product.id,
        variant_duration="plan",
        variant_duration_value=1,
        variant_duration_unit=unit,
        variant_price=Decimal("100.00"),
        start_date=NOW - timedelta(days=1),
        end_date=end_date,
        status=status,
        payment_status="completed",
        is_latest=True,
        metadata_={},
    )
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def test_new_subscription_notice_names_product(db, make_user, make_product):
    user, product = make_user(), make_product("Market Pulse")
    subscription = _subscription(db, user, product, NOW + timedelta(days=30))

    notification = create_new_subscription_notification(db, subscription, now=NOW)

    assert notification.notification_type == NOTIFICATION_SUBSCRIPTION_ACTIVE
    assert notification.title == "Subscription Active"
    assert '"Market Pulse"' in notification.message
    assert notification.triggered_by == "payment"
    assert notification.metadata_["oldStatus"] is None
    assert notification.metadata_["newStatus"] == "active"
    assert notification.is_read is False


def test_same_notice_within_ten_minutes_is_reused(db, make_user, make_product):
    user, product = make_user(), make_product()
    subscription = _subscription(db, user, product, NOW + timedelta(days=30))

    first = create_new_subscription_notification(db, subscription, now=NOW)
    again = create_new_subscription_notification(db, subscription, now=NOW + timedelta(minutes=9))
    later = create_new_subscription_notification(db, subscription, now=NOW + timedelta(minutes=11))

    assert again.id == first.id
    assert later.id != first.id
    assert db.query(models.UserNotification).count() == 2


@pytest.mark.parametrize("days_left", [10, 3])
def test_expiring_soon_sent_on_notice_days(db, make_user, make_product, days_left):
    user, product = make_user(), make_product("Market Pulse")
    subscription = _subscription(db, user, product, NOW + timedelta(days=days_left), unit="days")

    notification = create_status_change_notification(db, subscription, "active", "expiresoon", now=NOW)

    assert notification.notification_type == NOTIFICATION_SUBSCRIPTION_EXPIRING_SOON
    assert f"expiring in {days_left} days" in notification.message


@pytest.mark.parametrize("days_left", [9, 7, 4, 2])
def test_expiring_soon_suppressed_on_other_days(db, make_user, make_product, days_left):
    user, product = make_user(), make_product()
    subscription = _subscription(db, user, product, NOW + timedelta(days=days_left), unit="months")

    assert create_status_change_notification(db, subscription, "active", "expiresoon", now=NOW) is None
    assert db.query(models.UserNotification).count() == 0


def test_short_plans_always_get_expiring_notice(db, make_user, make_product):
    user, product = make_user(), make_product()
    subscription = _subscription(db, user, product, NOW + timedelta(minutes=4), unit="minutes")

    notification = create_status_change_notification(db, subscription, "active", "expiresoon", now=NOW)

    assert notification is not None
    assert notification.notification_type == NOTIFICATION_SUBSCRIPTION_EXPIRING_SOON


def test_expired_notice(db, make_user, make_product):
    user, product = make_user(), make_product("Market Pulse")
    subscription = _subscription(db, user, product, NOW - timedelta(hours=1), status="expired")

    notification = create_status_change_notification(db, subscription, "expiresoon", "expired", now=NOW)

    assert notification.title == "Subscription Expired"
    assert notification.metadata_["subscriptionDetails"]["productName"] == "Market Pulse"


def test_feed_lists_latest_first_with_unread_count(client, db, make_user, make_product):
    user, other, product = make_user(), make_user(), make_product()
    mine = _subscription(db, user, product, NOW + timedelta(days=30))
    theirs = _subscription(db, other, product, NOW + timedelta(days=30))
    older = create_new_subscription_notification(db, mine, now=NOW)
    newer = create_status_change_notification(db, mine, "active", "expired", now=NOW + timedelta(hours=1))
    create_new_subscription_notification(db, theirs, now=NOW)

    response = client.get("/api/user/notifications", headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert [n["id"] for n in body["notifications"]] == [newer.id, older.id]
    assert body["unread_count"] == 2
    assert body["notifications"][0]["metadata"]["newStatus"] == "expired"


def test_feed_limit_is_bounded(client, make_user):
    user = make_user()

    response = client.get("/api/user/notifications", params={"limit": 500}, headers=auth_headers(user))

    assert response.status_code == 422


def test_mark_read_updates_unread_count(client, db, make_user, make_product):
    user, product = make_user(), make_product()
    subscription = _subscription(db, user, product, NOW + timedelta(days=30))
    notification = create_new_subscription_notification(db, subscription, now=NOW)

    response = client.post(f"/api/user/notifications/{notification.id}/read", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "notification_id": notification.id, "unread_count": 0}
    db.expire_all()
    stored = db.get(models.UserNotification, notification.id)
    assert stored.is_read is True
    assert stored.read_at is not None


def test_mark_read_of_someone_elses_notification_is_not_found(client, db, make_user, make_product):
    owner, stranger, product = make_user(), make_user(), make_product()
    subscription = _subscription(db, owner, product, NOW + timedelta(days=30))
    notification = create_new_subscription_notification(db, subscription, now=NOW)

    response = client.post(f"/api/user/notifications/{notification.id}/read", headers=auth_headers(stranger))

    assert response.status_code == 404


def test_feed_filters_unread_and_type(client, db, make_user, make_product):
    user, product = make_user(), make_product()
    subscription = _subscription(db, user, product, NOW + timedelta(days=30))
    active = create_new_subscription_notification(db, subscription, now=NOW)
    expired = create_status_change_notification(db, subscription, "active", "expired", now=NOW + timedelta(hours=1))
    client.post(f"/api/user/notifications/{expired.id}/read", headers=auth_headers(user))

    unread = client.get("/api/user/notifications", params={"unread": "true"}, headers=auth_headers(user)).json()
    by_type = client.get(
        "/api/user/notifications", params={"type": "subscription_expired"}, headers=auth_headers(user)
    ).json()

    assert [n["id"] for n in unread["notifications"]] == [active.id]
    assert [n["id"] for n in by_type["notifications"]] == [expired.id]
    assert unread["unread_count"] == 1


def test_mark_all_read(client, db, make_user, make_product):
    user, other, product = make_user(), make_user(), make_product()
    mine = _subscription(db, user, product, NOW + timedelta(days=30))
    theirs = _subscription(db, other, product, NOW + timedelta(days=30))
    create_new_subscription_notification(db, mine, now=NOW)
    create_status_change_notification(db, mine, "active", "expired", now=NOW + timedelta(hours=1))
    create_new_subscription_notification(db, theirs, now=NOW)

    response = client.post("/api/user/notifications/read-all", headers=auth_headers(user))

    assert response.json() == {"ok": True, "updated": 2, "unread_count": 0}
    db.expire_all()
    assert db.query(models.UserNotification).filter_by(user_id=other.id, is_read=False).count() == 1
