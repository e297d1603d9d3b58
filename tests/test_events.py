"""
Test suite for the event dispatcher
"""

import logging

from avenir_banking.events import (
    DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
)


class Publisher(EventPublisherMixin):
    def __init__(self, event_dispatcher=None):
        self.event_dispatcher = event_dispatcher


class TestEventDispatcher:
    """Test publish/subscribe"""

    def setup_method(self):
        """Set up test fixtures"""
        self.dispatcher = EventDispatcher()
        self.received = []

    def handler(self, event):
        self.received.append(event)

    def test_subscribe_and_publish(self):
        """Test a handler only receives its event type"""
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, self.handler)

        self.dispatcher.publish(EventPayload(DomainEvent.TRANSFER_COMPLETED, "transaction", "t1", {}))
        self.dispatcher.publish(EventPayload(DomainEvent.DEPOSIT_COMPLETED, "transaction", "t2", {}))

        assert [e.entity_id for e in self.received] == ["t1"]

    def test_global_handler(self):
        """Test subscribe_all receives every event"""
        self.dispatcher.subscribe_all(self.handler)
        self.dispatcher.publish(EventPayload(DomainEvent.MESSAGE_SENT, "message", "m1", {}))
        self.dispatcher.publish(EventPayload(DomainEvent.ORDER_PLACED, "order", "o1", {}))
        assert len(self.received) == 2

        self.dispatcher.unsubscribe_all(self.handler)
        self.dispatcher.publish(EventPayload(DomainEvent.ORDER_PLACED, "order", "o2", {}))
        assert len(self.received) == 2

    def test_unsubscribe(self):
        """Test unsubscribed handlers stop receiving events"""
        self.dispatcher.subscribe(DomainEvent.ACTIVITY_CREATED, self.handler)
        assert self.dispatcher.get_handler_count(DomainEvent.ACTIVITY_CREATED) == 1

        self.dispatcher.unsubscribe(DomainEvent.ACTIVITY_CREATED, self.handler)
        self.dispatcher.unsubscribe(DomainEvent.ACTIVITY_CREATED, self.handler)
        assert self.dispatcher.get_handler_count() == 0

    def test_failing_handler_is_logged(self, caplog):
        """Test a handler error does not stop other handlers"""
        def broken(event):
            raise RuntimeError("handler bug")

        self.dispatcher.subscribe(DomainEvent.NOTIFICATION_CREATED, broken)
        self.dispatcher.subscribe(DomainEvent.NOTIFICATION_CREATED, self.handler)

        with caplog.at_level(logging.ERROR, logger="avenir.events"):
            self.dispatcher.publish(
                EventPayload(DomainEvent.NOTIFICATION_CREATED, "notification", "n1", {})
            )

        assert len(self.received) == 1
        assert "handler bug" in caplog.text

    def test_payload_to_dict(self):
        """Test payload serialization"""
        payload = EventPayload(DomainEvent.TRADE_EXECUTED, "trade", "tr1", {"quantity": 3})
        data = payload.to_dict()
        assert data['event_type'] == "trade.executed"
        assert data['data'] == {"quantity": 3}
        assert data['event_id'] == payload.event_id

    def test_clear(self):
        """Test clear removes all handlers"""
        self.dispatcher.subscribe(DomainEvent.USER_REGISTERED, self.handler)
        self.dispatcher.subscribe_all(self.handler)
        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0


class TestEventPublisherMixin:
    """Test the manager-side helper"""

    def test_publish_without_dispatcher_is_noop(self):
        """Test managers without a dispatcher publish nothing"""
        Publisher().publish_event(DomainEvent.ACCOUNT_CREATED, "account", "a1", {})

    def test_publish_with_dispatcher(self):
        """Test managers build the payload"""
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe(DomainEvent.ACCOUNT_CREATED, received.append)

        Publisher(dispatcher).publish_event(DomainEvent.ACCOUNT_CREATED, "account", "a1", {"x": 1})

        assert received[0].entity_type == "account"
        assert received[0].data == {"x": 1}
