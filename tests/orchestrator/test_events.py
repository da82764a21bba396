"""
tests/orchestrator/test_events.py - 이벤트 버스 테스트
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

from orchestrator.events import ALERT_EVENT_TYPES, Event, EventBus, EventType


def _event(event_type: EventType = EventType.SNAPSHOT_FAILED) -> Event:
    return Event(event_type, cluster_id="fin-redis-rg", snapshot_id="s1", status="failed")


class TestEvent:
    """Event 테스트"""

    def test_payload(self):
        ts = datetime(2024, 10, 1, tzinfo=timezone.utc)
        event = Event(EventType.COPY_FAILED, "fin-redis-rg", "s1-us-west-2", "failed", {"k": 1}, ts)

        assert event.to_payload() == {
            "event": "copy.failed",
            "cluster_id": "fin-redis-rg",
            "snapshot_id": "s1-us-west-2",
            "status": "failed",
            "timestamp": ts.isoformat(),
            "detail": {"k": 1},
        }

    def test_alert_types(self):
        """실패/지연/드리프트/중단만 기본 알림 대상"""
        assert EventType.SNAPSHOT_FAILED in ALERT_EVENT_TYPES
        assert EventType.SNAPSHOT_PENDING_TIMEOUT in ALERT_EVENT_TYPES
        assert EventType.COPY_FAILED in ALERT_EVENT_TYPES
        assert EventType.SNAPSHOT_AVAILABLE not in ALERT_EVENT_TYPES
        assert EventType.RESTORE_STATE_CHANGED not in ALERT_EVENT_TYPES


class TestEventBus:
    """EventBus 테스트"""

    def test_all_types_subscription(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(handler)

        event = _event()
        bus.publish(event)

        handler.assert_called_once_with(event)

    def test_type_filter(self):
        bus = EventBus()
        handler = MagicMock()
        bus.subscribe(handler, types={EventType.SNAPSHOT_AVAILABLE})

        bus.publish(_event(EventType.SNAPSHOT_FAILED))
        handler.assert_not_called()

        bus.publish(_event(EventType.SNAPSHOT_AVAILABLE))
        handler.assert_called_once()

    def test_unsubscribe(self):
        bus = EventBus()
        handler = MagicMock()
        unsubscribe = bus.subscribe(handler)

        unsubscribe()
        unsubscribe()
        bus.publish(_event())

        handler.assert_not_called()

    def test_handler_error_isolated(self):
        """한 구독자의 예외가 다른 구독자와 발행자에게 전파되지 않음"""
        bus = EventBus()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        bus.subscribe(failing)
        bus.subscribe(healthy)

        bus.publish(_event())

        healthy.assert_called_once()

    def test_handler_can_publish(self):
        """구독자 안에서 다시 발행해도 교착 없음"""
        bus = EventBus()
        received = []

        def chain(event):
            received.append(event.type)
            if event.type is EventType.SNAPSHOT_AVAILABLE:
                bus.publish(_event(EventType.COPY_STARTED))

        bus.subscribe(chain)
        bus.publish(_event(EventType.SNAPSHOT_AVAILABLE))

        assert received == [EventType.SNAPSHOT_AVAILABLE, EventType.COPY_STARTED]
