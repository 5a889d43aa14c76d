import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

from app.models import NotificationRecord, RealtimeEvent
from app.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)


class NotificationStore:
    """In-app inbox, per-user realtime event channel and push fan-out.

    Events on one user's channel keep publication order. Delivery is
    best-effort unless the caller uses ``deliver`` and handles the failure.
    """

    def __init__(self, sender: Optional[PushSender] = None, max_events_per_user: int = 500):
        self._sender = sender or push_sender
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}
        self._events: Dict[str, Deque[RealtimeEvent]] = {}
        self._max_events = max_events_per_user
        self._seq = 0

    @property
    def push_enabled(self) -> bool:
        return self._sender.enabled

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> RealtimeEvent:
        with self._lock:
            self._seq += 1
            record = RealtimeEvent(
                seq=self._seq,
                user_id=user_id,
                event=event,
                payload=dict(payload),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            channel = self._events.setdefault(user_id, deque(maxlen=self._max_events))
            channel.append(record)
        return record

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        push_data: Dict[str, Any] = {
            "notification_id": record.id,
            "category": category,
            "deep_link": deep_link or "",
        }
        push_data.update(data or {})
        invalid_tokens = self._sender.send(tokens=tokens, title=title, body=body, data=push_data)
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def deliver(
        self,
        user_id: str,
        event: str,
        payload: Dict[str, Any],
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        """Publish a realtime event and an inbox notification. Push failures propagate."""
        self.publish(user_id, event, payload)
        return self.create(
            user_id=user_id,
            title=title,
            body=body,
            category=category,
            deep_link=deep_link,
            data={"event": event},
        )

    def notify(
        self,
        user_id: str,
        event: str,
        payload: Dict[str, Any],
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> Optional[NotificationRecord]:
        try:
            return self.deliver(
                user_id=user_id,
                event=event,
                payload=payload,
                title=title,
                body=body,
                category=category,
                deep_link=deep_link,
            )
        except Exception:
            logger.exception("Notification delivery failed for user=%s event=%s", user_id, event)
            return None

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None

    def events_since(self, user_id: str, after_seq: int = 0, limit: int = 100) -> List[RealtimeEvent]:
        with self._lock:
            channel = self._events.get(user_id, deque())
            return [event for event in channel if event.seq > after_seq][:limit]


notification_store = NotificationStore()
