"""
Test suite for notifications module

Tests in-app notifications, advisor activities and the push webhook.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from avenir_banking.audit import AuditTrail, AuditEventType
from avenir_banking.config import AvenirConfig
from avenir_banking.errors import ForbiddenError, NotFoundError, ValidationError
from avenir_banking.events import DomainEvent, EventDispatcher
from avenir_banking.notifications import NotificationService, WebhookPushSender
from avenir_banking.storage import InMemoryStorage
from avenir_banking.users import UserManager, UserRole


class TestWebhookPushSender:
    """Test the push gateway client"""

    def setup_method(self):
        """Set up test fixtures"""
        self.sender = WebhookPushSender("https://push.test/hook", timeout=2.0)

    @patch("avenir_banking.notifications.requests.post")
    def test_send(self, mock_post):
        """Test the payload is POSTed as JSON"""
        mock_post.return_value = MagicMock(status_code=202)

        assert self.sender.send("notification", {"id": "n1"})

        mock_post.assert_called_once_with(
            "https://push.test/hook",
            json={"type": "notification", "data": {"id": "n1"}},
            timeout=2.0,
            headers={"Content-Type": "application/json"}
        )

    @patch("avenir_banking.notifications.requests.post")
    def test_send_failures(self, mock_post):
        """Test HTTP errors and connection errors are reported, not raised"""
        mock_post.return_value = MagicMock(status_code=500)
        assert not self.sender.send("activity", {})

        mock_post.side_effect = requests.ConnectionError("down")
        assert not self.sender.send("activity", {})


class TestNotificationService:
    """Test notifications and activities"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = AvenirConfig(use_sqlite=False)
        self.dispatcher = EventDispatcher()
        self.push_sender = MagicMock()
        self.user_manager = UserManager(self.storage, self.audit_trail, config=self.config)
        self.service = NotificationService(
            self.storage, self.user_manager, self.audit_trail,
            event_dispatcher=self.dispatcher, push_sender=self.push_sender, config=self.config
        )

        self.client = self.user_manager.create_client("Jane", "Doe", "jane@example.com", "password123")
        self.advisor = self.user_manager.create_user(
            "Alan", "Advisor", "alan@avenir.fr", "password123", UserRole.ADVISOR
        )

    def test_create_notification(self):
        """Test a notification is stored, published and pushed"""
        events = []
        self.dispatcher.subscribe(DomainEvent.NOTIFICATION_CREATED, events.append)

        notification = self.service.create_notification(self.client.id, "  Hello  ")

        assert notification.message == "Hello"
        assert not notification.read
        assert events[0].data['recipient_id'] == self.client.id
        self.push_sender.send.assert_called_once_with("notification", notification.to_event_data())

        with pytest.raises(ValidationError, match="message is required"):
            self.service.create_notification(self.client.id, "   ")

    def test_unread_and_mark_read(self):
        """Test unread counts and recipient-only marking"""
        first = self.service.create_notification(self.client.id, "One")
        self.service.create_notification(self.client.id, "Two")
        assert self.service.get_unread_count(self.client.id) == 2

        assert self.service.mark_notification_as_read(first.id, self.client.id).read
        assert self.service.get_unread_count(self.client.id) == 1

        with pytest.raises(NotFoundError, match="Notification not found"):
            self.service.mark_notification_as_read(first.id, self.advisor.id)

    def test_get_notifications_for_user(self):
        """Test per-user listing and limit"""
        for i in range(3):
            self.service.create_notification(self.client.id, f"Message {i}")
        self.service.create_notification(self.advisor.id, "Staff only")

        notifications = self.service.get_notifications_for_user(self.client.id)
        assert len(notifications) == 3
        assert all(n.recipient_id == self.client.id for n in notifications)
        assert len(self.service.get_notifications_for_user(self.client.id, limit=2)) == 2

    def test_send_notification_to_client(self):
        """Test only staff notify, and only clients"""
        notification = self.service.send_notification_to_client(
            self.advisor.id, self.client.id, "Your card is ready"
        )
        assert notification.recipient_id == self.client.id
        assert self.audit_trail.get_events_by_type(AuditEventType.NOTIFICATION_SENT)

        with pytest.raises(NotFoundError, match="Sender not found"):
            self.service.send_notification_to_client("ghost", self.client.id, "Hi")
        with pytest.raises(ForbiddenError, match="Only advisors and directors"):
            self.service.send_notification_to_client(self.client.id, self.client.id, "Hi")
        with pytest.raises(NotFoundError, match="Client not found"):
            self.service.send_notification_to_client(self.advisor.id, self.advisor.id, "Hi")

    def test_create_activity(self):
        """Test staff publish activities with their name"""
        events = []
        self.dispatcher.subscribe(DomainEvent.ACTIVITY_CREATED, events.append)

        activity = self.service.create_activity(self.advisor.id, " Open day ", "Come visit us")

        assert activity.title == "Open day"
        assert activity.author_name == "Alan Advisor"
        assert events[0].data['published_at'] == activity.created_at.isoformat()
        assert [a.id for a in self.service.get_activities()] == [activity.id]

    def test_create_activity_rules(self):
        """Test activity input rules"""
        with pytest.raises(NotFoundError, match="Author not found"):
            self.service.create_activity("ghost", "Title", "Body")
        with pytest.raises(ForbiddenError):
            self.service.create_activity(self.client.id, "Title", "Body")
        with pytest.raises(ValidationError, match="title is required"):
            self.service.create_activity(self.advisor.id, " ", "Body")
        with pytest.raises(ValidationError, match="cannot exceed 255"):
            self.service.create_activity(self.advisor.id, "x" * 256, "Body")
        with pytest.raises(ValidationError, match="description is required"):
            self.service.create_activity(self.advisor.id, "Title", "")

    def test_recent_notifications_have_names(self):
        """Test the director overview resolves recipient names"""
        self.service.create_notification(self.client.id, "Hello")
        self.service.create_notification("deleted-user", "Lost")

        recent = self.service.get_recent_notifications()
        names = {item['message']: item['recipient_name'] for item in recent}
        assert names == {"Hello": "Jane Doe", "Lost": "Unknown"}

    def test_webhook_from_config(self):
        """Test a configured URL creates the push sender"""
        service = NotificationService(
            self.storage, self.user_manager, self.audit_trail,
            config=AvenirConfig(use_sqlite=False, push_webhook_url="https://push.test/hook")
        )
        assert isinstance(service.push_sender, WebhookPushSender)

        assert NotificationService(
            self.storage, self.user_manager, self.audit_trail, config=self.config
        ).push_sender is None
