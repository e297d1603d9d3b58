"""
Notification Module

In-app notifications for users and activities published by advisors and
directors. Every created item is published on the event dispatcher and,
when a push webhook is configured, POSTed to it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import uuid

import requests

from .audit import AuditTrail, AuditEventType
from .config import AvenirConfig, get_config
from .errors import ForbiddenError, NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .storage import StorageInterface, StorageRecord
from .users import UserManager, UserRole

logger = logging.getLogger("avenir.notifications")

STAFF_ROLES = (UserRole.ADVISOR, UserRole.DIRECTOR)


@dataclass
class Notification(StorageRecord):
    """Message shown to one user"""
    recipient_id: str
    message: str
    read: bool = False

    def to_event_data(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'recipient_id': self.recipient_id,
            'message': self.message,
            'read': self.read,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class Activity(StorageRecord):
    """News item published by an advisor or director"""
    title: str
    description: str
    author_id: str
    author_name: str

    def to_event_data(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'author_id': self.author_id,
            'author_name': self.author_name,
            'published_at': self.created_at.isoformat(),
        }


class WebhookPushSender:
    """POSTs notification payloads to an external push gateway"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, kind: str, data: Dict[str, Any]) -> bool:
        try:
            response = requests.post(
                self.url,
                json={'type': kind, 'data': data},
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning(f"Push webhook failed for {kind}: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"Push webhook returned {response.status_code} for {kind}")
            return False
        return True


class NotificationService(EventPublisherMixin):
    """Creates and reads notifications and activities"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        push_sender: Optional[WebhookPushSender] = None,
        config: Optional[AvenirConfig] = None
    ):
        self.storage = storage
        self.users = users
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.config = config or get_config()
        if push_sender is None and self.config.push_webhook_url:
            push_sender = WebhookPushSender(
                self.config.push_webhook_url, self.config.push_webhook_timeout
            )
        self.push_sender = push_sender
        self.notifications_table = "notifications"
        self.activities_table = "activities"

    def _broadcast(self, event_type: DomainEvent, kind: str, entity_id: str,
                   data: Dict[str, Any]) -> None:
        self.publish_event(event_type, kind, entity_id, data)
        if self.push_sender:
            self.push_sender.send(kind, data)

    def _load_notifications(self, filters: Optional[Dict[str, Any]] = None) -> List[Notification]:
        if filters:
            data = self.storage.find(self.notifications_table, filters)
        else:
            data = self.storage.load_all(self.notifications_table)
        notifications = [Notification.from_dict(item) for item in data]
        notifications.sort(key=lambda n: n.created_at)
        notifications.reverse()
        return notifications

    def create_notification(self, recipient_id: str, message: str) -> Notification:
        if not message or not message.strip():
            raise ValidationError("Notification message is required")

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient_id=recipient_id,
            message=message.strip()
        )
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())

        self._broadcast(DomainEvent.NOTIFICATION_CREATED, 'notification',
                        notification.id, notification.to_event_data())
        return notification

    def get_notifications_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        return self._load_notifications({'recipient_id': user_id})[:limit]

    def mark_notification_as_read(self, notification_id: str, user_id: str) -> Notification:
        """Mark a notification read; only its recipient may do so"""
        data = self.storage.load(self.notifications_table, notification_id)
        if not data or data.get('recipient_id') != user_id:
            raise NotFoundError("Notification not found")

        notification = Notification.from_dict(data)
        notification.read = True
        notification.touch()
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return notification

    def get_unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.notifications_table,
                                     {'recipient_id': user_id, 'read': False}))

    def send_notification_to_client(self, sender_id: str, client_id: str,
                                    message: str) -> Notification:
        """Advisor or director notifies a client"""
        sender = self.users.get_user(sender_id)
        if not sender:
            raise NotFoundError("Sender not found")
        if sender.role not in STAFF_ROLES:
            raise ForbiddenError("Only advisors and directors can send notifications")

        client = self.users.get_user(client_id)
        if not client or not client.is_client():
            raise NotFoundError("Client not found")

        notification = self.create_notification(client_id, message)
        self.audit_trail.log_event(
            AuditEventType.NOTIFICATION_SENT, 'notification', notification.id,
            {'recipient_id': client_id}, sender_id
        )
        return notification

    def create_activity(self, author_id: str, title: str, description: str) -> Activity:
        author = self.users.get_user(author_id)
        if not author:
            raise NotFoundError("Author not found")
        if author.role not in STAFF_ROLES:
            raise ForbiddenError("Only advisors and directors can publish activities")
        if not title or not title.strip():
            raise ValidationError("Activity title is required")
        if len(title.strip()) > 255:
            raise ValidationError("Activity title cannot exceed 255 characters")
        if not description or not description.strip():
            raise ValidationError("Activity description is required")

        now = datetime.now(timezone.utc)
        activity = Activity(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            title=title.strip(),
            description=description.strip(),
            author_id=author.id,
            author_name=author.full_name
        )
        self.storage.save(self.activities_table, activity.id, activity.to_dict())
        self.audit_trail.log_event(
            AuditEventType.ACTIVITY_CREATED, 'activity', activity.id,
            {'title': activity.title}, author.id
        )

        self._broadcast(DomainEvent.ACTIVITY_CREATED, 'activity',
                        activity.id, activity.to_event_data())
        return activity

    def get_activities(self, limit: int = 50) -> List[Activity]:
        activities = [Activity.from_dict(item) for item in self.storage.load_all(self.activities_table)]
        activities.sort(key=lambda a: a.created_at)
        activities.reverse()
        return activities[:limit]

    def get_recent_notifications(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Latest notifications across all users, with recipient names"""
        results = []
        names: Dict[str, str] = {}
        for notification in self._load_notifications()[:limit]:
            if notification.recipient_id not in names:
                recipient = self.users.get_user(notification.recipient_id)
                names[notification.recipient_id] = recipient.full_name if recipient else "Unknown"
            data = notification.to_event_data()
            data['recipient_name'] = names[notification.recipient_id]
            results.append(data)
        return results
