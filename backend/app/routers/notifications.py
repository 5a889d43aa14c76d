from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth import current_user
from app.models import DeviceTokenRegisterRequest, NotificationRecord, RealtimeEventPage
from app.services.marketplace import marketplace

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    unread_only: bool = Query(default=False),
    user_id: str = Depends(current_user),
):
    return marketplace.notifications.list_for_user(user_id=user_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(payload: DeviceTokenRegisterRequest, user_id: str = Depends(current_user)):
    marketplace.notifications.register_device_token(user_id=user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.get("/events", response_model=RealtimeEventPage)
def poll_events(
    after: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(current_user),
):
    events = marketplace.notifications.events_since(user_id=user_id, after_seq=after, limit=limit)
    last_seq = events[-1].seq if events else after
    return RealtimeEventPage(events=events, last_seq=last_seq)


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(notification_id: str, user_id: str = Depends(current_user)):
    updated = marketplace.notifications.mark_read(user_id=user_id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
