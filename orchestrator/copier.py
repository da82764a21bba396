"""
orchestrator/copier.py - 리전 간 스냅샷 복사

available 스냅샷을 DR 리전용 버킷으로 export하고, 복사본 레코드를 트래커에 등록합니다.
(snapshot_id, target_region) 쌍마다 진행 중인 복사는 최대 하나입니다.

진행 슬롯 해제 시점:
    - 복사본 레코드가 종료 상태가 됨 (copy.available / copy.failed 이벤트)
    - export API 호출 자체가 실패함
"""

from __future__ import annotations

import logging
import threading

from core.exceptions import ConfigError, CopyInProgress, InvalidStateTransition, SourceNotReady

from .events import Event, EventBus, EventType
from .gateway import ElastiCacheGateway
from .policy import PolicyStore
from .tracker import SnapshotTracker
from .types import SnapshotRecord, SnapshotStatus, TriggerKind, utcnow

logger = logging.getLogger(__name__)


def copy_snapshot_name(snapshot_id: str, target_region: str, attempt: int = 1) -> str:
    """복사본 이름 (재시도는 시도 번호를 붙임: snap-1-us-west-2-2)"""
    name = f"{snapshot_id}-{target_region}"
    return name if attempt == 1 else f"{name}-{attempt}"


class CrossRegionCopier:
    """리전 간 복사기

    Args:
        gateway: 소스 리전 게이트웨이
        tracker: 원본 조회 및 복사본 추적용 트래커
        bus: 이벤트 버스 (copy.* 이벤트를 구독해 슬롯 해제)
        dr_buckets: 대상 리전 -> export 버킷
        policies: 자동 복사 시 대상 리전/KMS 키를 조회할 정책 저장소
    """

    def __init__(
        self,
        gateway: ElastiCacheGateway,
        tracker: SnapshotTracker,
        bus: EventBus,
        dr_buckets: dict[str, str],
        policies: PolicyStore | None = None,
    ) -> None:
        self._gateway = gateway
        self._tracker = tracker
        self._bus = bus
        self._dr_buckets = dict(dr_buckets)
        self._policies = policies

        self._in_flight: dict[tuple[str, str], str] = {}
        self._completed: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

        bus.subscribe(self._on_copy_finished, types={EventType.COPY_AVAILABLE, EventType.COPY_FAILED})

    def in_flight(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._in_flight)

    def copy(self, snapshot_id: str, target_region: str, kms_key_id: str | None = None) -> SnapshotRecord:
        """스냅샷을 대상 리전으로 복사

        Raises:
            SourceNotReady: 원본이 없거나 available이 아님
            CopyInProgress: 같은 (스냅샷, 리전) 복사가 진행 중
            ConfigError: 대상 리전의 DR 버킷 미설정
            InvalidStateTransition: 트래커가 복사본 레코드를 받아들이지 않음
        """
        source = self._tracker.get(snapshot_id)
        if source is None or source.status is not SnapshotStatus.AVAILABLE:
            raise SourceNotReady(snapshot_id, source.status.value if source else "unknown")

        bucket = self._dr_buckets.get(target_region)
        if not bucket:
            raise ConfigError(f"dr_buckets.{target_region}", "대상 리전의 DR 버킷이 설정되지 않았습니다")

        key = (snapshot_id, target_region)
        with self._lock:
            if key in self._in_flight:
                raise CopyInProgress(snapshot_id, target_region)
            done = self._completed.get(key)
            if done is not None:
                existing = self._tracker.get(done)
                if existing is not None and existing.status is SnapshotStatus.AVAILABLE:
                    logger.debug("이미 복사 완료: %s -> %s", snapshot_id, target_region)
                    return existing
            # 실패한 이전 시도의 레코드는 그대로 두고 새 이름으로 시도
            attempt = 1
            target_name = copy_snapshot_name(snapshot_id, target_region)
            while self._tracker.get(target_name) is not None:
                attempt += 1
                target_name = copy_snapshot_name(snapshot_id, target_region, attempt)
            self._in_flight[key] = target_name

        try:
            self._gateway.export_snapshot(snapshot_id, target_name, bucket, kms_key_id)
        except Exception:
            with self._lock:
                self._in_flight.pop(key, None)
            raise

        record = SnapshotRecord(
            snapshot_id=target_name,
            cluster_id=source.cluster_id,
            trigger=TriggerKind.COPY,
            created_at=utcnow(),
            region=target_region,
            size=source.size,
            kms_key_id=kms_key_id or source.kms_key_id,
            source_snapshot_id=snapshot_id,
            target_bucket=bucket,
        )
        if not self._tracker.track(record):
            with self._lock:
                self._in_flight.pop(key, None)
            raise InvalidStateTransition(target_name, "terminal", record.status.value)

        self._bus.publish(
            Event(
                type=EventType.COPY_STARTED,
                cluster_id=source.cluster_id,
                snapshot_id=target_name,
                status=record.status.value,
                detail={
                    "source_snapshot_id": snapshot_id,
                    "target_region": target_region,
                    "bucket": bucket,
                    "attempt": attempt,
                },
            )
        )
        return record

    def _on_copy_finished(self, event: Event) -> None:
        record = self._tracker.get(event.snapshot_id or "")
        if record is None or record.source_snapshot_id is None:
            return

        key = (record.source_snapshot_id, record.region)
        with self._lock:
            self._in_flight.pop(key, None)
            if record.status is SnapshotStatus.AVAILABLE:
                self._completed[key] = record.snapshot_id

    def on_snapshot_available(self, event: Event) -> None:
        """정책에 cross_region_target이 있으면 완료된 스냅샷을 자동 복사

        복사 실패는 알림 체인으로 넘기고, 이벤트 발행자에게는 전파하지 않습니다.
        """
        if self._policies is None or event.cluster_id not in self._policies:
            return

        policy = self._policies.get(event.cluster_id)
        if not policy.cross_region_target or not event.snapshot_id:
            return

        try:
            self.copy(event.snapshot_id, policy.cross_region_target, policy.kms_key_id)
        except CopyInProgress:
            logger.debug("자동 복사 건너뜀 (진행 중): %s", event.snapshot_id)
        except Exception as e:
            logger.error("자동 복사 시작 실패: %s -> %s (%s)", event.snapshot_id, policy.cross_region_target, e)
            self._bus.publish(
                Event(
                    type=EventType.COPY_FAILED,
                    cluster_id=event.cluster_id,
                    snapshot_id=event.snapshot_id,
                    status=SnapshotStatus.FAILED.value,
                    detail={"target_region": policy.cross_region_target, "failure_reason": str(e)},
                )
            )
