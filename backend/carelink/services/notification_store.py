import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol
from uuid import uuid4

from carelink.models import NotificationRecord
from carelink.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(
        self,
        recipient_id: str,
        title: str,
        message: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> bool: ...


class NotificationStore:
    """In-app inbox. Every record is also pushed to the recipient's registered devices."""

    def __init__(self, sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._sender = sender or push_sender
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
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
        delivery = self._sender.send_notification(
            tokens=tokens,
            title=title,
            body=body,
            data={
                "notification_id": record.id,
                "category": category,
                "deep_link": deep_link or "",
            },
        )
        if delivery.invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in delivery.invalid_tokens:
                    current.discard(token)
        if tokens and not delivery.delivered:
            logger.warning("Push not delivered user=%s notification=%s", user_id, record.id)
        return record

    def send(
        self,
        recipient_id: str,
        title: str,
        message: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> bool:
        """Deliver to the inbox (and devices). True once the inbox record exists."""
        self.create(user_id=recipient_id, title=title, body=message, category=category, deep_link=deep_link)
        return True

    @property
    def push_enabled(self) -> bool:
        return self._sender.enabled

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        category: Optional[str] = None,
    ) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            if category:
                rows = [n for n in rows if n.category == category]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
