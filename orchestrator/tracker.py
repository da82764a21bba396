"""
orchestrator/tracker.py - 스냅샷 상태 추적

PENDING 레코드를 주기적으로 관측해 종료 상태로 전이시키고 이벤트로 알립니다.

규칙:
    - 종료된 레코드는 바뀌지 않습니다 (SnapshotRecord.resolve가 보장).
    - FAILED 레코드는 감사용으로 보관하며 자동 재시도하지 않습니다.
    - pending_alert_after를 넘긴 PENDING 레코드는 알림 이벤트를 한 번만 내고
      계속 PENDING으로 둡니다. 종료 판정은 항상 AWS가 합니다.
    - 폴링 중 API 오류는 로그만 남기고 다음 주기에 다시 관측합니다.

Example:
    tracker = SnapshotTracker(gateway, bus, poll_interval=30)
    tracker.track(record)
    tracker.start()
    ...
    final = tracker.wait_for(record.snapshot_id, timeout=3600)
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from core.exceptions import APICallError, SnapshotFailed

from .events import Event, EventBus, EventType
from .gateway import ElastiCacheGateway
from .types import SnapshotRecord, SnapshotStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_PENDING_ALERT_AFTER = timedelta(minutes=90)


class SnapshotTracker:
    """SnapshotRecord 상태 머신 보관소 + 폴러

    Args:
        gateway: 상태 관측에 사용할 게이트웨이
        bus: 결과를 알릴 이벤트 버스
        poll_interval: 백그라운드 폴링 간격 (초)
        pending_alert_after: pending 알림 기준 시간
    """

    def __init__(
        self,
        gateway: ElastiCacheGateway,
        bus: EventBus,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        pending_alert_after: timedelta = DEFAULT_PENDING_ALERT_AFTER,
    ) -> None:
        self._gateway = gateway
        self._bus = bus
        self.poll_interval = poll_interval
        self.pending_alert_after = pending_alert_after

        self._records: dict[str, SnapshotRecord] = {}
        self._timeout_alerted: set[str] = set()
        self._waiters: dict[str, threading.Event] = {}
        self._lock = threading.RLock()

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # =========================================================================
    # 레코드 관리
    # =========================================================================

    def track(self, record: SnapshotRecord) -> bool:
        """레코드 등록 (이미 종료된 레코드는 이력에만 추가)

        Returns:
            등록했으면 True, 같은 ID의 종료된 레코드가 있어 무시했으면 False
        """
        with self._lock:
            existing = self._records.get(record.snapshot_id)
            if existing is not None and existing.is_terminal:
                logger.debug("종료된 레코드 재등록 무시: %s", record.snapshot_id)
                return False
            self._records[record.snapshot_id] = record
            self._waiters.setdefault(record.snapshot_id, threading.Event())
            if record.is_terminal:
                self._waiters[record.snapshot_id].set()
        return True

    def import_existing(self, cluster_id: str) -> list[SnapshotRecord]:
        """AWS에 이미 있는 스냅샷(자동 스냅샷 포함)을 이력으로 가져오기

        종료된 스냅샷은 이벤트 없이 이력에만 추가되고, 진행 중인 것은 추적됩니다.
        """
        imported = []
        for snapshot in self._gateway.list_snapshots(cluster_id):
            record = SnapshotRecord.from_api(snapshot, self._gateway.region)
            with self._lock:
                if record.snapshot_id in self._records:
                    continue
            self.track(record)
            imported.append(record)

        logger.info("기존 스냅샷 %d개 가져옴: %s", len(imported), cluster_id)
        return imported

    def get(self, snapshot_id: str) -> SnapshotRecord | None:
        with self._lock:
            return self._records.get(snapshot_id)

    def history(self, cluster_id: str) -> list[SnapshotRecord]:
        """클러스터 스냅샷 이력 (생성 시각 오름차순, 복사본 포함)"""
        with self._lock:
            records = [r for r in self._records.values() if r.cluster_id == cluster_id]
        return sorted(records, key=lambda r: r.created_at)

    def pending(self, cluster_id: str | None = None) -> list[SnapshotRecord]:
        with self._lock:
            return [
                r
                for r in self._records.values()
                if r.status is SnapshotStatus.PENDING and (cluster_id is None or r.cluster_id == cluster_id)
            ]

    def latest_available(self, cluster_id: str) -> SnapshotRecord | None:
        """복원에 사용할 최신 available 스냅샷 (복사본 제외)"""
        candidates = [
            r for r in self.history(cluster_id) if r.status is SnapshotStatus.AVAILABLE and not r.is_copy
        ]
        return candidates[-1] if candidates else None

    # =========================================================================
    # 폴링
    # =========================================================================

    def poll_once(self, now: datetime | None = None) -> list[SnapshotRecord]:
        """PENDING 레코드를 한 번씩 관측

        Returns:
            이번 폴링에서 종료 상태가 된 레코드 목록
        """
        now = now or utcnow()
        resolved = []

        for record in self.pending():
            try:
                observation = self._gateway.observe(record)
            except APICallError as e:
                logger.warning("스냅샷 상태 조회 실패, 다음 주기에 재시도: %s (%s)", record.snapshot_id, e)
                continue

            if observation.status is SnapshotStatus.PENDING:
                self._check_pending_timeout(record, now)
                continue

            final = self._resolve(record, observation.status, observation.size, observation.failure_reason)
            if final is not None:
                resolved.append(final)

        return resolved

    def _resolve(
        self,
        record: SnapshotRecord,
        status: SnapshotStatus,
        size: str | None,
        failure_reason: str | None,
    ) -> SnapshotRecord | None:
        with self._lock:
            current = self._records.get(record.snapshot_id)
            if current is None or current.is_terminal:
                return None
            final = current.resolve(status, size=size, failure_reason=failure_reason)
            self._records[final.snapshot_id] = final
            waiter = self._waiters.setdefault(final.snapshot_id, threading.Event())

        if status is SnapshotStatus.AVAILABLE:
            logger.info("스냅샷 완료: %s/%s (%s)", final.cluster_id, final.snapshot_id, final.size or "-")
            event_type = EventType.COPY_AVAILABLE if final.is_copy else EventType.SNAPSHOT_AVAILABLE
        else:
            logger.error("스냅샷 실패: %s/%s (%s)", final.cluster_id, final.snapshot_id, failure_reason)
            event_type = EventType.COPY_FAILED if final.is_copy else EventType.SNAPSHOT_FAILED

        self._bus.publish(
            Event(
                type=event_type,
                cluster_id=final.cluster_id,
                snapshot_id=final.snapshot_id,
                status=final.status.value,
                detail={
                    "trigger": final.trigger.value,
                    "region": final.region,
                    "source_snapshot_id": final.source_snapshot_id,
                    "failure_reason": final.failure_reason,
                },
            )
        )
        # 구독자(자동 복사 등) 처리 후 대기자 해제
        waiter.set()
        return final

    def _check_pending_timeout(self, record: SnapshotRecord, now: datetime) -> None:
        if record.age_seconds(now) < self.pending_alert_after.total_seconds():
            return
        with self._lock:
            if record.snapshot_id in self._timeout_alerted:
                return
            self._timeout_alerted.add(record.snapshot_id)

        minutes = int(record.age_seconds(now) // 60)
        logger.warning("스냅샷 pending 지연: %s/%s (%d분 경과)", record.cluster_id, record.snapshot_id, minutes)
        self._bus.publish(
            Event(
                type=EventType.SNAPSHOT_PENDING_TIMEOUT,
                cluster_id=record.cluster_id,
                snapshot_id=record.snapshot_id,
                status=record.status.value,
                detail={"pending_minutes": minutes, "trigger": record.trigger.value},
            )
        )

    def wait_for(self, snapshot_id: str, timeout: float | None = None) -> SnapshotRecord:
        """레코드가 종료 상태가 될 때까지 대기

        폴링은 백그라운드 스레드(start) 또는 다른 호출자의 poll_once가 담당합니다.

        Raises:
            KeyError: 추적하지 않는 스냅샷
            TimeoutError: timeout 내에 종료되지 않음
            SnapshotFailed: 스냅샷이 실패로 종료됨
        """
        with self._lock:
            if snapshot_id not in self._records:
                raise KeyError(snapshot_id)
            waiter = self._waiters.setdefault(snapshot_id, threading.Event())

        if not waiter.wait(timeout):
            raise TimeoutError(f"스냅샷 대기 시간 초과: {snapshot_id}")

        record = self._records[snapshot_id]
        if record.status is SnapshotStatus.FAILED:
            raise SnapshotFailed(record.snapshot_id, record.cluster_id, record.failure_reason)
        return record

    # =========================================================================
    # 백그라운드 루프
    # =========================================================================

    def start(self) -> None:
        """백그라운드 폴링 스레드 시작 (이미 실행 중이면 무시)"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="snapshot-tracker", daemon=True)
        self._thread.start()
        logger.debug("트래커 시작 (간격 %.1f초)", self.poll_interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("트래커 폴링 루프 오류")
            self._stop.wait(self.poll_interval)
