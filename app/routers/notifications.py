from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app import models, schemas
from app.auth import get_current_user
from app.database import get_db
from app.notification_center import (
    get_unread_notification_count,
    list_user_notifications,
    mark_all_user_notifications_read,
    mark_user_notification_read,
)

router = APIRouter(prefix="/api/user/notifications", tags=["notifications"])


@router.get("", response_model=schemas.NotificationListResponse)
def get_my_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    unread: bool = Query(default=False),
    notification_type: Optional[str] = Query(default=None, alias="type"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notifications = list_user_notifications(
        db,
        current_user.id,
        limit=limit,
        unread_only=unread,
        notification_type=notification_type,
    )
    return schemas.NotificationListResponse(
        notifications=[schemas.NotificationResponse.model_validate(n) for n in notifications],
        unread_count=get_unread_notification_count(db, current_user.id),
    )


@router.post("/read-all")
def mark_all_notifications_read(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = mark_all_user_notifications_read(db, current_user.id)
    return {"ok": True, "updated": updated, "unread_count": 0}


@router.post("/{notification_id}/read")
def mark_notification_read(
    notification_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = mark_user_notification_read(db, current_user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")

    return {
        "ok": True,
        "notification_id": notification.id,
        "unread_count": get_unread_notification_count(db, current_user.id),
    }
