from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from deps import Services, get_services
from errors import NotFound, ValidationError
from policies import authorize
from routers import ok
from schemas import NOTIFICATION_TYPES
from security import get_current_user

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationIn(BaseModel):
    type: str = "system"
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=500)
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    sendEmail: bool = False
    expiresAt: Optional[datetime] = None


class DirectNotificationIn(NotificationIn):
    userId: str


class BulkNotificationIn(NotificationIn):
    userIds: List[str] = Field(default_factory=list)
    role: Optional[Literal["customer", "farmer", "admin"]] = None


def _template(body: NotificationIn) -> dict:
    if body.type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type: {body.type}")
    return {"type": body.type, "title": body.title, "message": body.message,
            "data": body.data, "priority": body.priority}


@router.get("")
def list_notifications(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                       unreadOnly: bool = False, user=Depends(get_current_user),
                       services: Services = Depends(get_services)):
    items, pagination, unread = services.notifier.list_for_user(user["id"], page, limit, unreadOnly)
    return ok(items, pagination=pagination, unreadCount=unread)


@router.put("/read-all")
def mark_all_read(user=Depends(get_current_user), services: Services = Depends(get_services)):
    count = services.notifier.mark_all_read(user["id"])
    return ok({"updated": count}, "All notifications marked as read")


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    notification = services.notifier.mark_read(user["id"], notification_id)
    if not notification:
        raise NotFound("Notification not found")
    return ok(notification)


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, user=Depends(get_current_user),
                        services: Services = Depends(get_services)):
    if not services.notifier.delete(user["id"], notification_id):
        raise NotFound("Notification not found")
    return ok(message="Notification deleted")


@router.post("", status_code=201)
def create_notification(body: DirectNotificationIn, user=Depends(get_current_user),
                        services: Services = Depends(get_services)):
    authorize("notification.broadcast", user)
    if not services.db["user"].find_one({"id": body.userId}):
        raise NotFound("User not found")
    notification = services.notifier.send(body.userId, send_email=body.sendEmail,
                                          expires_at=body.expiresAt, **_template(body))
    return ok(notification, "Notification sent")


@router.post("/bulk", status_code=201)
def bulk_notification(body: BulkNotificationIn, user=Depends(get_current_user),
                      services: Services = Depends(get_services)):
    authorize("notification.broadcast", user)
    recipients = list(body.userIds)
    if body.role:
        recipients += [u["id"] for u in services.db["user"].find({"role": body.role, "isActive": True}, {"id": 1})]
    recipients = list(dict.fromkeys(recipients))
    if not recipients:
        raise ValidationError("No recipients selected")
    sent = services.notifier.send_bulk(recipients, _template(body), send_email=body.sendEmail)
    return ok({"recipients": len(recipients), "sent": sum(1 for n in sent if n)}, "Notifications sent")
