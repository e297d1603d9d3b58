"""
Messaging Module

Private two-party conversations. Clients may only open a conversation with
an advisor; staff may write to anyone who is not banned.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import ForbiddenError, NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .notifications import NotificationService
from .storage import StorageInterface, StorageRecord
from .users import User, UserManager, UserRole

PENDING_MESSAGE_NOTICE = "Vous avez un message en attente"


class ConversationStatus(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Conversation(StorageRecord):
    user1_id: str
    user2_id: str
    client_id: Optional[str] = None
    advisor_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    unread_count_user1: int = 0
    unread_count_user2: int = 0

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def other_participant(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id

    def unread_count_for(self, user_id: str) -> int:
        return self.unread_count_user1 if self.user1_id == user_id else self.unread_count_user2


@dataclass
class Message(StorageRecord):
    conversation_id: str
    sender_id: str
    sender_name: str
    sender_role: UserRole
    content: str
    read: bool = False

    def to_dict_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'sender_name': self.sender_name,
            'sender_role': self.sender_role.value.lower(),
            'content': self.content,
            'timestamp': self.created_at.isoformat(),
            'read': self.read,
        }


class MessagingService(EventPublisherMixin):
    """Conversations and messages between users"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        notifications: NotificationService,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.users = users
        self.notifications = notifications
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.conversations_table = "conversations"
        self.messages_table = "messages"

    def _save_conversation(self, conversation: Conversation) -> None:
        self.storage.save(self.conversations_table, conversation.id, conversation.to_dict())

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self.storage.load(self.conversations_table, conversation_id)
        if not data:
            return None
        return Conversation.from_dict(data)

    def _participant_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.get_conversation(conversation_id)
        if not conversation or not conversation.has_participant(user_id):
            raise NotFoundError("Conversation not found")
        return conversation

    def _find_between(self, user_a: str, user_b: str) -> Optional[Conversation]:
        for filters in ({'user1_id': user_a, 'user2_id': user_b},
                        {'user1_id': user_b, 'user2_id': user_a}):
            matches = self.storage.find(self.conversations_table, filters)
            if matches:
                return Conversation.from_dict(matches[0])
        return None

    def conversation_view(self, conversation: Conversation, user_id: str) -> Dict[str, Any]:
        """Conversation as seen by one participant"""
        other: Optional[User] = self.users.get_user(conversation.other_participant(user_id))
        return {
            'id': conversation.id,
            'recipient_id': other.id if other else None,
            'recipient_name': other.full_name if other else "Unknown",
            'recipient_email': other.email if other else None,
            'recipient_role': other.role.value.lower() if other else None,
            'status': conversation.status.value,
            'unread_count': conversation.unread_count_for(user_id),
            'created_at': conversation.created_at,
            'updated_at': conversation.updated_at,
        }

    def get_or_create_conversation(self, user_id: str, target_id: str) -> Dict[str, Any]:
        """
        Conversation between two users, opened on first contact

        Raises:
            ValidationError: missing or identical participants, unknown users
            ForbiddenError: a client writing to someone other than an advisor
        """
        if not user_id or not target_id or user_id == target_id:
            raise ValidationError("Invalid conversation participants")

        user = self.users.get_user(user_id)
        target = self.users.get_user(target_id)
        if not user:
            raise ValidationError("User not found")
        if not target or target.is_banned:
            raise ValidationError("Target user not found")
        if user.role == UserRole.CLIENT and target.role != UserRole.ADVISOR:
            raise ForbiddenError("Clients can only message advisors")

        with self.storage.atomic():
            conversation = self._find_between(user_id, target_id)
            if not conversation:
                client_id = next((u.id for u in (user, target) if u.role == UserRole.CLIENT), user.id)
                advisor_id = next((u.id for u in (user, target) if u.role == UserRole.ADVISOR), None)
                now = datetime.now(timezone.utc)
                conversation = Conversation(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    user1_id=user_id,
                    user2_id=target_id,
                    client_id=client_id,
                    advisor_id=advisor_id
                )
                self._save_conversation(conversation)

        return self.conversation_view(conversation, user_id)

    def get_conversations_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Conversations of a user, most recently active first"""
        found = {}
        for field_name in ('user1_id', 'user2_id'):
            for data in self.storage.find(self.conversations_table, {field_name: user_id}):
                found[data['id']] = Conversation.from_dict(data)
        conversations = sorted(found.values(), key=lambda c: c.updated_at, reverse=True)
        return [self.conversation_view(c, user_id) for c in conversations]

    def _load_messages(self, conversation_id: str) -> List[Message]:
        messages = [
            Message.from_dict(data)
            for data in self.storage.find(self.messages_table, {'conversation_id': conversation_id})
        ]
        messages.sort(key=lambda m: m.created_at)
        return messages

    def get_messages(self, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Messages of a conversation, oldest first; participants only"""
        self._participant_conversation(conversation_id, user_id)
        return [m.to_dict_view() for m in self._load_messages(conversation_id)]

    def send_message(self, conversation_id: str, sender_id: str, content: str) -> Dict[str, Any]:
        content = (content or '').strip()
        if not content:
            raise ValidationError("Message content is required")

        with self.storage.atomic():
            conversation = self._participant_conversation(conversation_id, sender_id)
            sender = self.users.require_user(sender_id)

            now = datetime.now(timezone.utc)
            message = Message(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                conversation_id=conversation.id,
                sender_id=sender.id,
                sender_name=sender.full_name,
                sender_role=sender.role,
                content=content
            )
            self.storage.save(self.messages_table, message.id, message.to_dict())

            if conversation.user1_id == sender_id:
                conversation.unread_count_user2 += 1
            else:
                conversation.unread_count_user1 += 1
            conversation.touch()
            self._save_conversation(conversation)

            self.audit_trail.log_event(
                AuditEventType.MESSAGE_SENT, 'message', message.id,
                {'conversation_id': conversation.id}, sender_id
            )

        recipient_id = conversation.other_participant(sender_id)
        self.notifications.create_notification(recipient_id, PENDING_MESSAGE_NOTICE)

        view = message.to_dict_view()
        self.publish_event(DomainEvent.MESSAGE_SENT, 'message', message.id,
                           dict(view, recipient_id=recipient_id))
        return view

    def mark_messages_as_read(self, conversation_id: str, user_id: str) -> int:
        """Mark the other participant's messages read; returns how many changed"""
        with self.storage.atomic():
            conversation = self._participant_conversation(conversation_id, user_id)
            other_id = conversation.other_participant(user_id)

            updated = 0
            for message in self._load_messages(conversation.id):
                if message.sender_id == other_id and not message.read:
                    message.read = True
                    message.touch()
                    self.storage.save(self.messages_table, message.id, message.to_dict())
                    updated += 1

            if conversation.user1_id == user_id:
                conversation.unread_count_user1 = 0
            else:
                conversation.unread_count_user2 = 0
            self._save_conversation(conversation)

        return updated

    def delete_message(self, message_id: str, user_id: str) -> None:
        with self.storage.atomic():
            data = self.storage.load(self.messages_table, message_id)
            if not data:
                raise NotFoundError("Message not found")
            message = Message.from_dict(data)
            self._participant_conversation(message.conversation_id, user_id)
            if message.sender_id != user_id:
                raise ForbiddenError("Only the sender can delete a message")

            self.storage.delete(self.messages_table, message.id)
            self.audit_trail.log_event(
                AuditEventType.MESSAGE_DELETED, 'message', message.id,
                {'conversation_id': message.conversation_id}, user_id
            )

    def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        """Delete a conversation and its messages; participants only"""
        with self.storage.atomic():
            conversation = self._participant_conversation(conversation_id, user_id)
            for message in self._load_messages(conversation.id):
                self.storage.delete(self.messages_table, message.id)
            self.storage.delete(self.conversations_table, conversation.id)
            self.audit_trail.log_event(
                AuditEventType.CONVERSATION_DELETED, 'conversation', conversation.id,
                {'user1_id': conversation.user1_id, 'user2_id': conversation.user2_id},
                user_id
            )
