"""
orchestrator/events.py - 프로세스 내 이벤트 버스

스케줄러 -> 트래커 -> 알림 체인은 공유 상태 대신 이벤트로 연결됩니다.
publish()는 발행자 스레드에서 구독자를 순서대로 호출하며,
구독자 예외는 로그만 남기고 발행자에게 전파하지 않습니다.

Example:
    bus = EventBus()
    bus.subscribe(print, types={EventType.SNAPSHOT_FAILED})
    bus.publish(Event(EventType.SNAPSHOT_FAILED, cluster_id="fin-redis-rg", snapshot_id="s1", status="failed"))
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .types import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """이벤트 종류"""

    SNAPSHOT_REQUESTED = "snapshot.requested"
    SNAPSHOT_AVAILABLE = "snapshot.available"
    SNAPSHOT_FAILED = "snapshot.failed"
    SNAPSHOT_PENDING_TIMEOUT = "snapshot.pending_timeout"
    COPY_STARTED = "copy.started"
    COPY_AVAILABLE = "copy.available"
    COPY_FAILED = "copy.failed"
    POLICY_DRIFT = "policy.drift"
    RESTORE_STATE_CHANGED = "restore.state_changed"
    RESTORE_ABORTED = "restore.aborted"


# 기본적으로 외부 싱크로 전달되는 이벤트
ALERT_EVENT_TYPES: frozenset[EventType] = frozenset(
    {
        EventType.SNAPSHOT_FAILED,
        EventType.SNAPSHOT_PENDING_TIMEOUT,
        EventType.COPY_FAILED,
        EventType.POLICY_DRIFT,
        EventType.RESTORE_ABORTED,
    }
)


@dataclass(frozen=True)
class Event:
    """오케스트레이터 이벤트"""

    type: EventType
    cluster_id: str
    snapshot_id: str | None = None
    status: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        """알림 싱크로 보내는 페이로드"""
        return {
            "event": self.type.value,
            "cluster_id": self.cluster_id,
            "snapshot_id": self.snapshot_id,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }


Handler = Callable[[Event], Any]


class EventBus:
    """스레드 세이프 동기 pub/sub"""

    def __init__(self) -> None:
        self._subscribers: list[tuple[Handler, frozenset[EventType] | None]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler, types: Iterable[EventType] | None = None) -> Callable[[], None]:
        """구독 등록

        Args:
            handler: 이벤트 콜백
            types: 받을 이벤트 종류 (None이면 전부)

        Returns:
            구독 해제 함수
        """
        entry = (handler, frozenset(types) if types is not None else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug("이벤트 발행: %s %s/%s", event.type.value, event.cluster_id, event.snapshot_id)
        for handler, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("이벤트 핸들러 실패: %s (%s)", getattr(handler, "__qualname__", handler), event.type.value)
