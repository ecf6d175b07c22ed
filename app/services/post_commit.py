import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app import models
from app.database import SessionLocal
from app.errors import utc_timestamp
from app.invoices import InvoiceDocument, InvoiceLine, send_invoice_email
from app.notification_center import (
    create_new_subscription_notification,
    create_status_change_notification,
)
from app.payments import to_money
from app.schemas import InvoiceEmailStatus
from app.services.checkout import CheckoutResult
from app.subscriptions import STATUS_ACTIVE, STATUS_EXPIRES_SOON, utcnow

logger = logging.getLogger(__name__)

INVOICE_TASK = "invoice_email"


@dataclass
class TaskOutcome:
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


def run_post_commit_tasks(tasks: list[tuple[str, Optional[Callable[[], Any]]]]) -> list[TaskOutcome]:
    """Run best-effort work after commit; a failing task never stops the next one.

    A task given as ``None`` is recorded as skipped.
    """
    outcomes = []
    for name, task in tasks:
        if task is None:
            outcomes.append(TaskOutcome(name=name, ok=False, skipped=True))
            continue
        try:
            task()
        except Exception as exc:
            logger.exception("Post-commit task %s failed", name)
            outcomes.append(TaskOutcome(name=name, ok=False, error=str(exc) or type(exc).__name__))
        else:
            outcomes.append(TaskOutcome(name=name, ok=True))
    return outcomes


def build_invoice_document(user: models.User, result: CheckoutResult) -> InvoiceDocument:
    payment = result.payment
    items = [
        InvoiceLine(
            name=created.product_name,
            duration=created.duration,
            price=created.price,
            start_date=created.start_date,
            end_date=created.end_date,
        )
        for created in result.created
    ]
    return InvoiceDocument(
        order_id=result.order_id,
        order_date=utcnow(),
        payment_status=payment.status if payment is not None else "captured",
        customer_name=user.name or "Valued Customer",
        customer_email=user.email,
        customer_phone=user.mobile,
        subtotal=sum((item.price for item in items), to_money(0)),
        discount=result.discount,
        total=to_money(payment.amount) if payment is not None else result.total,
        items=items,
    )


def notify_created_subscription(subscription_id: int) -> Optional[models.UserNotification]:
    """Emit the creation-time notice for one subscription using its own session."""
    db = SessionLocal()
    try:
        subscription = (
            db.query(models.Subscription)
            .filter(models.Subscription.id == subscription_id)
            .first()
        )
        if subscription is None:
            logger.warning("Subscription %s vanished before notification", subscription_id)
            return None

        should_notify = bool((subscription.metadata_ or {}).get("shouldNotifyOnCreate"))
        if subscription.status == STATUS_EXPIRES_SOON and should_notify:
            return create_status_change_notification(
                db, subscription, STATUS_ACTIVE, STATUS_EXPIRES_SOON, triggered_by="payment"
            )
        if subscription.status == STATUS_ACTIVE:
            return create_new_subscription_notification(db, subscription)
        return None
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_checkout_side_effects(
    user: models.User,
    result: CheckoutResult,
) -> tuple[InvoiceEmailStatus, list[TaskOutcome]]:
    invoice_task = None
    if result.payment is not None:
        def invoice_task():
            send_invoice_email(build_invoice_document(user, result))
    else:
        logger.warning("No captured payment record for order_id=%s; skipping invoice email", result.order_id)

    tasks = [(INVOICE_TASK, invoice_task)]
    for subscription_id in result.created_subscription_ids:
        tasks.append((f"notification:{subscription_id}", lambda sid=subscription_id: notify_created_subscription(sid)))

    outcomes = run_post_commit_tasks(tasks)
    invoice_outcome = outcomes[0]
    invoice_status = InvoiceEmailStatus(
        sent=invoice_outcome.ok,
        attempted=not invoice_outcome.skipped,
        error=invoice_outcome.error,
        to=user.email,
        timestamp=utc_timestamp(),
    )
    return invoice_status, outcomes
