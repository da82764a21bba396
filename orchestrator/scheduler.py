"""
orchestrator/scheduler.py - 스냅샷 스케줄러

자동 스냅샷 설정을 정책과 맞추고, 변경 이벤트 전 수동 스냅샷을 트리거합니다.

- schedule_automatic: 보존 기간/시간대가 다를 때만 modify_replication_group 호출
- trigger_manual: 같은 클러스터에 대기 중인 수동 스냅샷이 있으면 SchedulingConflict
  (이 프로세스가 추적 중인 것 + AWS에서 creating 상태인 것)
- check_drift: 정책과 실제 설정(reserved-memory-percent 포함) 비교, 보고만 함
"""

from __future__ import annotations

import logging
import threading

from core.exceptions import SchedulingConflict

from .events import Event, EventBus, EventType
from .gateway import ElastiCacheGateway
from .ownership import ClusterOwnership
from .tracker import SnapshotTracker
from .types import (
    BackupPolicy,
    ChangeReason,
    DriftItem,
    SnapshotRecord,
    SnapshotStatus,
    TriggerKind,
    utcnow,
)

logger = logging.getLogger(__name__)

RESERVED_MEMORY_PARAMETER = "reserved-memory-percent"


def manual_snapshot_name(cluster_id: str, reason: ChangeReason) -> str:
    """수동 스냅샷 이름 (예: fin-redis-rg-deploy-20241001-093000)"""
    label = reason.value.replace("_", "-")
    return f"{cluster_id}-{label}-{utcnow():%Y%m%d-%H%M%S}"


class SnapshotScheduler:
    """클러스터 스냅샷 스케줄러

    Args:
        gateway: 소스 리전 게이트웨이
        tracker: 생성한 레코드를 넘길 트래커
        bus: 이벤트 버스
        ownership: 클러스터 오너 레지스트리
        owner: 이 스케줄러의 오너 식별자
    """

    def __init__(
        self,
        gateway: ElastiCacheGateway,
        tracker: SnapshotTracker,
        bus: EventBus,
        ownership: ClusterOwnership,
        owner: str,
    ) -> None:
        self._gateway = gateway
        self._tracker = tracker
        self._bus = bus
        self._ownership = ownership
        self.owner = owner
        # 같은 클러스터에 대한 trigger_manual 검사-생성 구간 직렬화.
        # 락은 클러스터당 하나이고 지우지 않음 (대기 중인 스레드가 옛 락을 쥐고 있을 수 있음)
        self._cluster_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _cluster_lock(self, cluster_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._cluster_locks.setdefault(cluster_id, threading.Lock())

    def schedule_automatic(self, policy: BackupPolicy) -> bool:
        """자동 스냅샷 보존 기간/시간대를 정책에 맞춤

        Returns:
            실제로 변경했으면 True, 이미 같으면 False
        """
        self._ownership.acquire(policy.cluster_id, self.owner)

        group = self._gateway.describe_replication_group(policy.cluster_id) or {}
        current_retention = group.get("SnapshotRetentionLimit")
        current_window = group.get("SnapshotWindow")

        if current_retention == policy.retention_days and current_window == policy.snapshot_window:
            logger.debug("자동 스냅샷 설정 동일, 변경 없음: %s", policy.cluster_id)
            return False

        self._gateway.modify_snapshot_settings(policy.cluster_id, policy.retention_days, policy.snapshot_window)
        return True

    def trigger_manual(self, cluster_id: str, reason: ChangeReason, kms_key_id: str | None = None) -> SnapshotRecord:
        """수동/변경 전 스냅샷 생성

        변경 이벤트(배포, 파라미터 변경, 버전 업그레이드) 직전에 동기적으로 호출합니다.

        Raises:
            SchedulingConflict: 같은 클러스터의 수동 스냅샷이 아직 pending (AWS에서 creating 포함)
            ClusterOwnershipError: 다른 오너가 클러스터를 보유 중
        """
        self._ownership.acquire(cluster_id, self.owner)

        with self._cluster_lock(cluster_id):
            # 다른 프로세스가 요청한 creating 스냅샷도 충돌로 봄
            self._tracker.import_existing(cluster_id)
            for record in self._tracker.pending(cluster_id):
                if record.trigger in (TriggerKind.MANUAL, TriggerKind.PRE_CHANGE):
                    raise SchedulingConflict(cluster_id, record.snapshot_id)

            name = manual_snapshot_name(cluster_id, reason)
            snapshot = self._gateway.create_snapshot(cluster_id, name, kms_key_id)

            record = SnapshotRecord(
                snapshot_id=snapshot.get("SnapshotName", name),
                cluster_id=cluster_id,
                trigger=reason.trigger,
                created_at=utcnow(),
                status=SnapshotStatus.PENDING,
                region=self._gateway.region,
                kms_key_id=snapshot.get("KmsKeyId") or kms_key_id,
                reason=reason,
            )
            self._tracker.track(record)

        self._bus.publish(
            Event(
                type=EventType.SNAPSHOT_REQUESTED,
                cluster_id=cluster_id,
                snapshot_id=record.snapshot_id,
                status=record.status.value,
                detail={"trigger": record.trigger.value, "reason": reason.value},
            )
        )
        return record

    def check_drift(self, policy: BackupPolicy) -> list[DriftItem]:
        """정책 대비 실제 자동 스냅샷/메모리 설정 차이 확인

        차이가 있으면 policy.drift 이벤트를 발행합니다. 자동 수정하지 않습니다.
        """
        cluster_id = policy.cluster_id
        group = self._gateway.describe_replication_group(cluster_id)
        if group is None:
            drift = [DriftItem(cluster_id, "replication_group", "exists", None)]
        else:
            drift = []
            if group.get("SnapshotRetentionLimit") != policy.retention_days:
                drift.append(
                    DriftItem(cluster_id, "retention_days", policy.retention_days, group.get("SnapshotRetentionLimit"))
                )
            if group.get("SnapshotWindow") != policy.snapshot_window:
                drift.append(DriftItem(cluster_id, "snapshot_window", policy.snapshot_window, group.get("SnapshotWindow")))

            member = self._gateway.member_cluster_config(cluster_id)
            if member and member.parameter_group:
                value = self._gateway.get_parameter(member.parameter_group, RESERVED_MEMORY_PARAMETER)
                actual = int(value) if value is not None and value.isdigit() else value
                if actual != policy.reserved_memory_percent:
                    drift.append(DriftItem(cluster_id, "reserved_memory_percent", policy.reserved_memory_percent, actual))

        if drift:
            for item in drift:
                logger.warning("정책 드리프트: %s", item)
            self._bus.publish(
                Event(
                    type=EventType.POLICY_DRIFT,
                    cluster_id=cluster_id,
                    status="drift",
                    detail={"items": [{"field": d.field, "expected": d.expected, "actual": d.actual} for d in drift]},
                )
            )
        return drift
