"""
orchestrator/types.py - 데이터 모델

백업 정책, 스냅샷 레코드, 복원 요청과 각 상태 열거형을 정의합니다.

상태 머신:
    SnapshotRecord: PENDING -> AVAILABLE | FAILED (종료 후 불변)
    RestoreRequest: REQUESTED -> RESTORING -> WARMING -> CUTOVER -> COMPLETE
                    (종료 전 어느 상태에서든 ABORTED 가능)
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from core.exceptions import InvalidStateTransition

# 자동 스냅샷 보존 기간 상한 (ElastiCache 제한)
MAX_RETENTION_DAYS = 35
MIN_RETENTION_DAYS = 1

# 운영 티어 권장 reserved-memory-percent 범위
PRODUCTION_RESERVED_MEMORY_RANGE = (25, 50)

SNAPSHOT_WINDOW_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)-([01]\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# 열거형
# =============================================================================


class SnapshotStatus(str, Enum):
    """스냅샷 레코드 상태"""

    PENDING = "pending"
    AVAILABLE = "available"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SnapshotStatus.PENDING

    @classmethod
    def from_api(cls, value: str | None) -> SnapshotStatus:
        """ElastiCache SnapshotStatus 문자열을 변환

        creating/copying/exporting/restoring 등 진행 중 상태는 모두 PENDING.
        """
        if value == "available":
            return cls.AVAILABLE
        if value == "failed":
            return cls.FAILED
        return cls.PENDING


class TriggerKind(str, Enum):
    """스냅샷 생성 계기"""

    AUTOMATIC = "automatic"
    MANUAL = "manual"
    PRE_CHANGE = "pre-change"
    COPY = "copy"


class ChangeReason(str, Enum):
    """수동 스냅샷 사유

    AD_HOC을 제외한 사유는 변경 이벤트로 분류되어 pre-change 스냅샷이 됩니다.
    """

    DEPLOY = "deploy"
    PARAMETER_CHANGE = "parameter_change"
    VERSION_UPGRADE = "version_upgrade"
    AD_HOC = "ad_hoc"

    @property
    def is_change_event(self) -> bool:
        return self is not ChangeReason.AD_HOC

    @property
    def trigger(self) -> TriggerKind:
        return TriggerKind.PRE_CHANGE if self.is_change_event else TriggerKind.MANUAL


class PolicyTier(str, Enum):
    """클러스터 운영 티어"""

    PRODUCTION = "production"
    NON_PRODUCTION = "non-production"


class RestoreState(str, Enum):
    """블루-그린 복원 상태"""

    REQUESTED = "requested"
    RESTORING = "restoring"
    WARMING = "warming"
    CUTOVER = "cutover"
    COMPLETE = "complete"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RestoreState.COMPLETE, RestoreState.ABORTED)


# 허용된 복원 상태 전이 (ABORTED는 종료 전 모든 상태에서 허용)
RESTORE_TRANSITIONS: dict[RestoreState, tuple[RestoreState, ...]] = {
    RestoreState.REQUESTED: (RestoreState.RESTORING,),
    RestoreState.RESTORING: (RestoreState.WARMING,),
    RestoreState.WARMING: (RestoreState.CUTOVER,),
    RestoreState.CUTOVER: (RestoreState.COMPLETE,),
    RestoreState.COMPLETE: (),
    RestoreState.ABORTED: (),
}


# =============================================================================
# 백업 정책
# =============================================================================


@dataclass(frozen=True)
class BackupPolicy:
    """클러스터별 백업 정책

    Attributes:
        cluster_id: 복제 그룹 ID
        retention_days: 자동 스냅샷 보존 기간 (1~35일)
        snapshot_window: 자동 스냅샷 시간대 (UTC, "HH:MM-HH:MM")
        reserved_memory_percent: 스냅샷 fork 오버헤드용 예약 메모리 비율
        cross_region_target: DR 복사 대상 리전 (None이면 복사 안 함)
        tier: 운영 티어 (production이면 reserved-memory 권장 범위 적용)
        kms_key_id: 복사 시 사용할 KMS 키
    """

    cluster_id: str
    retention_days: int
    snapshot_window: str
    reserved_memory_percent: int
    cross_region_target: str | None = None
    tier: PolicyTier = PolicyTier.PRODUCTION
    kms_key_id: str | None = None

    @classmethod
    def from_dict(cls, cluster_id: str, data: dict[str, Any]) -> BackupPolicy:
        """YAML/JSON 딕셔너리에서 생성 (검증은 PolicyStore가 담당)"""
        return cls(
            cluster_id=cluster_id,
            retention_days=data.get("retention_days", 0),
            snapshot_window=str(data.get("snapshot_window", "")),
            reserved_memory_percent=data.get("reserved_memory_percent", 0),
            cross_region_target=data.get("cross_region_target"),
            tier=PolicyTier(data.get("tier", PolicyTier.PRODUCTION.value)),
            kms_key_id=data.get("kms_key_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "retention_days": self.retention_days,
            "snapshot_window": self.snapshot_window,
            "reserved_memory_percent": self.reserved_memory_percent,
            "cross_region_target": self.cross_region_target,
            "tier": self.tier.value,
            "kms_key_id": self.kms_key_id,
        }


@dataclass(frozen=True)
class DriftItem:
    """정책과 실제 설정의 차이"""

    cluster_id: str
    field: str
    expected: Any
    actual: Any

    def __str__(self) -> str:
        return f"{self.cluster_id}.{self.field}: 정책 {self.expected!r}, 실제 {self.actual!r}"


# =============================================================================
# 스냅샷 레코드
# =============================================================================


@dataclass(frozen=True)
class SnapshotRecord:
    """스냅샷 레코드

    종료 상태(AVAILABLE/FAILED)에 도달하면 더 이상 바뀌지 않습니다.
    상태 변경은 resolve()가 새 레코드를 반환하는 방식으로만 이뤄집니다.

    Attributes:
        snapshot_id: 스냅샷 이름
        cluster_id: 원본 복제 그룹 ID
        trigger: 생성 계기
        created_at: 생성(요청) 시각
        status: 현재 상태
        region: 스냅샷이 위치한 리전 (복사본은 대상 리전)
        size: 캐시 크기 (ElastiCache 표기, 예: "6 MB")
        kms_key_id: 암호화 키 참조
        reason: 수동 스냅샷 사유
        source_snapshot_id: 복사본의 원본 스냅샷
        target_bucket: 복사본이 export된 버킷
        completed_at: 종료 시각
        failure_reason: 실패 사유
    """

    snapshot_id: str
    cluster_id: str
    trigger: TriggerKind
    created_at: datetime
    status: SnapshotStatus = SnapshotStatus.PENDING
    region: str = ""
    size: str | None = None
    kms_key_id: str | None = None
    reason: ChangeReason | None = None
    source_snapshot_id: str | None = None
    target_bucket: str | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_copy(self) -> bool:
        return self.trigger is TriggerKind.COPY

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds()

    def resolve(
        self,
        status: SnapshotStatus,
        *,
        size: str | None = None,
        failure_reason: str | None = None,
        completed_at: datetime | None = None,
    ) -> SnapshotRecord:
        """종료 상태로 전이한 새 레코드 반환

        Raises:
            InvalidStateTransition: 이미 종료됐거나 PENDING으로 되돌리려는 경우
        """
        if self.is_terminal or not status.is_terminal:
            raise InvalidStateTransition(self.snapshot_id, self.status.value, status.value)

        return dataclasses.replace(
            self,
            status=status,
            size=size if size is not None else self.size,
            failure_reason=failure_reason,
            completed_at=completed_at or utcnow(),
        )

    @classmethod
    def from_api(cls, snapshot: dict[str, Any], region: str) -> SnapshotRecord:
        """describe_snapshots 응답 항목에서 생성 (기존 스냅샷 가져오기용)"""
        node_snapshots = snapshot.get("NodeSnapshots") or [{}]
        created_at = node_snapshots[0].get("SnapshotCreateTime") or utcnow()
        status = SnapshotStatus.from_api(snapshot.get("SnapshotStatus"))
        trigger = TriggerKind.AUTOMATIC if snapshot.get("SnapshotSource") == "automated" else TriggerKind.MANUAL

        return cls(
            snapshot_id=snapshot["SnapshotName"],
            cluster_id=snapshot.get("ReplicationGroupId") or snapshot.get("CacheClusterId", ""),
            trigger=trigger,
            created_at=created_at,
            status=status,
            region=region,
            size=node_snapshots[0].get("CacheSize"),
            kms_key_id=snapshot.get("KmsKeyId"),
            completed_at=created_at if status.is_terminal else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "cluster_id": self.cluster_id,
            "trigger": self.trigger.value,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "region": self.region,
            "size": self.size,
            "kms_key_id": self.kms_key_id,
            "reason": self.reason.value if self.reason else None,
            "source_snapshot_id": self.source_snapshot_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failure_reason": self.failure_reason,
        }


# =============================================================================
# 복원 요청
# =============================================================================


@dataclass
class RestoreRequest:
    """블루-그린 복원 요청

    RestoreOrchestrator가 전체 수명 주기를 소유합니다.
    state는 transition()으로만 변경합니다.
    """

    target_cluster_id: str
    source_snapshot_id: str
    node_type: str
    multi_az: bool = True
    source_cluster_id: str | None = None
    state: RestoreState = RestoreState.REQUESTED
    warmup_confirmed: bool = False
    validated_by: str | None = None
    abort_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    history: list[tuple[RestoreState, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, self.created_at))

    def transition(self, new_state: RestoreState) -> None:
        """상태 전이

        Raises:
            InvalidStateTransition: 허용되지 않은 전이
        """
        allowed = RESTORE_TRANSITIONS[self.state]
        if new_state is RestoreState.ABORTED:
            ok = not self.state.is_terminal
        else:
            ok = new_state in allowed

        if not ok:
            raise InvalidStateTransition(self.target_cluster_id, self.state.value, new_state.value)

        self.state = new_state
        self.history.append((new_state, utcnow()))

    def passed_through(self, state: RestoreState) -> bool:
        return any(s is state for s, _ in self.history)
