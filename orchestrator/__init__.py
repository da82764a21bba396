"""
orchestrator - ElastiCache(Redis) 스냅샷 수명 주기 오케스트레이터

AWS ElastiCache 컨트롤 플레인 위에서 백업/복원/DR 런북을 자동화합니다.

구성:
    orchestrator/
    ├── types.py       # BackupPolicy, SnapshotRecord, RestoreRequest, 상태 열거형
    ├── policy.py      # 정책 저장소 + 검증
    ├── scheduler.py   # 자동 스냅샷 설정, 수동/변경 전 스냅샷, 드리프트 확인
    ├── tracker.py     # pending -> available | failed 추적
    ├── copier.py      # 리전 간 복사
    ├── restore.py     # 블루-그린 복원
    ├── alerts.py      # 알림 디스패처 + 싱크
    ├── events.py      # 이벤트 버스
    ├── gateway.py     # ElastiCache API 래퍼
    ├── ownership.py   # 클러스터 단일 오너
    └── service.py     # 조립 (SnapshotOrchestrator)
"""

from .events import Event, EventBus, EventType
from .policy import PolicyStore, load_policies
from .service import SnapshotOrchestrator
from .types import (
    BackupPolicy,
    ChangeReason,
    PolicyTier,
    RestoreRequest,
    RestoreState,
    SnapshotRecord,
    SnapshotStatus,
    TriggerKind,
)

__all__: list[str] = [
    "SnapshotOrchestrator",
    "PolicyStore",
    "load_policies",
    "Event",
    "EventBus",
    "EventType",
    "BackupPolicy",
    "ChangeReason",
    "PolicyTier",
    "RestoreRequest",
    "RestoreState",
    "SnapshotRecord",
    "SnapshotStatus",
    "TriggerKind",
]
