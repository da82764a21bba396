"""
orchestrator/service.py - 오케스트레이터 조립

설정에서 컴포넌트를 만들고 이벤트 체인을 연결합니다.

    SnapshotScheduler --snapshot.requested--> (bus)
    SnapshotTracker   --snapshot.available--> CrossRegionCopier.on_snapshot_available
                      --*.failed / timeout--> AlertDispatcher -> 싱크
    RestoreOrchestrator (독립 실행, 트래커 이력의 스냅샷 사용)

Example:
    settings = load_settings("eso.yaml")
    with SnapshotOrchestrator.from_settings(settings) as orch:
        orch.apply_policies()
        record = orch.pre_change_snapshot("fin-redis-rg", ChangeReason.DEPLOY, timeout=3600)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from core.config import OrchestratorSettings
from core.exceptions import SnapshotFailed, SourceNotReady

from .alerts import AlertDispatcher, AlertSink, build_sinks
from .copier import CrossRegionCopier
from .events import EventBus, EventType
from .gateway import ElastiCacheGateway
from .ownership import ClusterOwnership
from .policy import PolicyStore, policies_from_mapping
from .restore import CutoverHandler, RestoreOrchestrator, Route53CnameCutover
from .scheduler import SnapshotScheduler
from .tracker import SnapshotTracker
from .types import ChangeReason, DriftItem, SnapshotRecord

if TYPE_CHECKING:
    import boto3

logger = logging.getLogger(__name__)


def create_session(settings: OrchestratorSettings) -> boto3.Session:
    import boto3

    return boto3.Session(profile_name=settings.profile, region_name=settings.region)


class SnapshotOrchestrator:
    """스냅샷 수명 주기 오케스트레이터

    Args:
        gateway: 소스 리전 게이트웨이
        settings: 오케스트레이터 설정
        policies: 정책 저장소 (None이면 settings.policies에서 로드)
        sinks: 알림 싱크 (None이면 LogSink)
        cutover_handler: 복원 컷오버 핸들러
        ownership: 공유 오너 레지스트리 (None이면 새로 생성)
    """

    def __init__(
        self,
        gateway: ElastiCacheGateway,
        settings: OrchestratorSettings,
        policies: PolicyStore | None = None,
        sinks: list[AlertSink] | None = None,
        cutover_handler: CutoverHandler | None = None,
        ownership: ClusterOwnership | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.bus = EventBus()
        self.policies = policies if policies is not None else policies_from_mapping(settings.policies)
        self.ownership = ownership or ClusterOwnership()

        self.tracker = SnapshotTracker(
            gateway,
            self.bus,
            poll_interval=settings.poll_interval_seconds,
            pending_alert_after=timedelta(minutes=settings.pending_alert_after_minutes),
        )
        self.scheduler = SnapshotScheduler(gateway, self.tracker, self.bus, self.ownership, settings.owner)
        self.copier = CrossRegionCopier(gateway, self.tracker, self.bus, settings.dr_buckets, self.policies)
        self.bus.subscribe(self.copier.on_snapshot_available, types={EventType.SNAPSHOT_AVAILABLE})

        self.restore = RestoreOrchestrator(gateway, self.bus, self.tracker, cutover_handler)

        self.alerts = AlertDispatcher(sinks if sinks is not None else build_sinks([]))
        self.alerts.attach(self.bus, forward_status=settings.forward_status_events)

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        session: boto3.Session | None = None,
        **kwargs: Any,
    ) -> SnapshotOrchestrator:
        """설정에서 boto3 세션/게이트웨이/싱크/컷오버 핸들러까지 구성"""
        session = session or create_session(settings)
        gateway = ElastiCacheGateway(session, settings.region, settings.retry)

        if "sinks" not in kwargs:
            kwargs["sinks"] = build_sinks(settings.sinks, session=session, region=settings.region)
        if "cutover_handler" not in kwargs and settings.cutover.hosted_zone_id and settings.cutover.record_name:
            kwargs["cutover_handler"] = Route53CnameCutover(
                session,
                gateway,
                settings.cutover.hosted_zone_id,
                settings.cutover.record_name,
                ttl=settings.cutover.ttl,
            )

        return cls(gateway, settings, **kwargs)

    # =========================================================================
    # 정책
    # =========================================================================

    def apply_policies(self) -> dict[str, bool]:
        """모든 정책의 자동 스냅샷 설정 적용 (클러스터 -> 변경 여부)"""
        return {policy.cluster_id: self.scheduler.schedule_automatic(policy) for policy in self.policies.all()}

    def check_drift(self) -> dict[str, list[DriftItem]]:
        """모든 정책의 드리프트 확인 (드리프트가 있는 클러스터만 반환)"""
        result = {}
        for policy in self.policies.all():
            drift = self.scheduler.check_drift(policy)
            if drift:
                result[policy.cluster_id] = drift
        return result

    # =========================================================================
    # 스냅샷
    # =========================================================================

    def pre_change_snapshot(
        self,
        cluster_id: str,
        reason: ChangeReason,
        wait: bool = True,
        timeout: float | None = None,
    ) -> SnapshotRecord:
        """변경 이벤트 전 스냅샷 생성 (wait=True면 종료 상태까지 대기)

        Raises:
            SchedulingConflict: 대기 중인 수동 스냅샷이 있음
            SnapshotFailed: 스냅샷 실패
            TimeoutError: timeout 초과
        """
        kms_key_id = self.policies.get(cluster_id).kms_key_id if cluster_id in self.policies else None
        record = self.scheduler.trigger_manual(cluster_id, reason, kms_key_id=kms_key_id)
        if not wait:
            return record

        self.tracker.start()
        return self.tracker.wait_for(record.snapshot_id, timeout)

    def adopt_snapshot(self, snapshot_id: str) -> SnapshotRecord:
        """AWS에 있는 스냅샷을 트래커에 등록 (이미 추적 중이면 그 레코드)

        Raises:
            SourceNotReady: 스냅샷이 없음
        """
        existing = self.tracker.get(snapshot_id)
        if existing is not None:
            return existing

        snapshot = self.gateway.describe_snapshot(snapshot_id)
        if snapshot is None:
            raise SourceNotReady(snapshot_id, "missing")

        record = SnapshotRecord.from_api(snapshot, self.gateway.region)
        self.tracker.track(record)
        return record

    def wait_for_copies(self, timeout: float | None = None) -> list[SnapshotRecord]:
        """진행 중인 복사가 모두 끝날 때까지 대기 후 복사본 레코드 반환"""
        self.tracker.start()
        results = []
        for record in self.tracker.pending():
            if record.is_copy:
                try:
                    results.append(self.tracker.wait_for(record.snapshot_id, timeout))
                except (SnapshotFailed, TimeoutError) as e:
                    logger.error("복사 실패/지연: %s (%s)", record.snapshot_id, e)
                    results.append(self.tracker.get(record.snapshot_id) or record)
        return results

    # =========================================================================
    # 수명 주기
    # =========================================================================

    def start(self) -> None:
        self.tracker.start()

    def close(self) -> None:
        self.tracker.stop(timeout=self.settings.poll_interval_seconds)
        self.alerts.close()

    def __enter__(self) -> SnapshotOrchestrator:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
