"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change in the bank is logged here.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, to_storable


class AuditEventType(Enum):
    """Types of audit events"""
    # User events
    USER_REGISTERED = "user_registered"
    USER_CREATED = "user_created"
    EMAIL_CONFIRMED = "email_confirmed"
    VERIFICATION_TOKEN_ISSUED = "verification_token_issued"
    USER_BANNED = "user_banned"
    USER_UNBANNED = "user_unbanned"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"

    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_RENAMED = "account_renamed"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_REACTIVATED = "account_reactivated"
    ACCOUNT_CLOSED = "account_closed"
    ACCOUNT_DELETED = "account_deleted"

    # Money movement
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    INTEREST_CAPITALIZED = "interest_capitalized"

    # Savings and credits
    SAVINGS_RATE_SET = "savings_rate_set"
    CREDIT_CREATED = "credit_created"
    CREDIT_ACTIVATED = "credit_activated"
    CREDIT_REPAYMENT = "credit_repayment"
    CREDIT_COMPLETED = "credit_completed"

    # Investments
    STOCK_CREATED = "stock_created"
    STOCK_DELETED = "stock_deleted"
    STOCK_AVAILABILITY_CHANGED = "stock_availability_changed"
    ORDER_PLACED = "order_placed"
    ORDER_CANCELLED = "order_cancelled"
    TRADE_EXECUTED = "trade_executed"
    WALLET_FUNDED = "wallet_funded"
    WALLET_WITHDRAWN = "wallet_withdrawn"

    # Communication
    NOTIFICATION_SENT = "notification_sent"
    ACTIVITY_CREATED = "activity_created"
    MESSAGE_SENT = "message_sent"
    MESSAGE_DELETED = "message_deleted"
    CONVERSATION_DELETED = "conversation_deleted"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # user, account, transaction, credit, order, ...
    entity_id: str
    sequence: int  # Position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        self.metadata = to_storable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (last hash and sequence) is stored alongside the events,
    so a rolled back atomic block leaves events and head consistent.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head or {'hash': "", 'sequence': 0}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        # Head read and event write happen under the storage lock, in one transaction
        with self.storage.atomic():
            head = self._load_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'hash': event.current_hash,
                'sequence': event.sequence
            })

            return event

    def _load_events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        if filters:
            data = self.storage.find(self.table_name, filters)
        else:
            data = self.storage.load_all(self.table_name)
        events = [AuditEvent.from_dict(item) for item in data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for one entity in chain order (most recent N with limit)"""
        events = self._load_events({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events by type within an inclusive time range"""
        events = self._load_events({'event_type': event_type.value})

        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]

        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._load_events()
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain and report every inconsistency

        hash_errors lists events whose content no longer matches their hash,
        chain_breaks lists events whose previous_hash does not point at the
        event before them (an event was removed or reordered), and
        head_mismatch is set when the stored head does not match the last
        event (the tail was removed).
        """
        events = self._load_events()
        hash_errors = [
            {'event_id': event.id, 'sequence': event.sequence,
             'expected_hash': event.calculate_hash(), 'actual_hash': event.current_hash}
            for event in events if not event.verify_hash()
        ]

        chain_breaks = []
        expected_previous = ""
        for event in events:
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'sequence': event.sequence,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        head = self._load_head()
        head_mismatch = head['hash'] != expected_previous or head['sequence'] != (
            events[-1].sequence if events else 0
        )

        return {
            'valid': not (hash_errors or chain_breaks or head_mismatch),
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
            'head_mismatch': head_mismatch,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        """Hash of the most recent event, empty for an empty trail"""
        return self._load_head()['hash']
