"""
orchestrator/restore.py - 블루-그린 복원 오케스트레이터

스냅샷에서 새 복제 그룹을 만들고, 설정을 동기화하고, 워밍 검증 확인을 받은 뒤
트래픽을 전환합니다.

상태 흐름:
    request()         -> REQUESTED
    start_restore()   -> RESTORING   (create_replication_group)
    check_restore()   -> WARMING     (그룹 available + 설정 동기화)
    confirm_warmup()     섀도 읽기 검증 신호 기록
    cutover()         -> CUTOVER -> COMPLETE (컷오버 핸들러 실행)
    abort()           -> ABORTED     (종료 전 어느 상태에서든)

기존 클러스터 폐기(decommission)는 복원 흐름과 분리된 운영자 명시 작업입니다.
같은 대상 클러스터의 작업은 대상별 락으로 직렬화되고, 다른 대상끼리는 락을
공유하지 않습니다.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from core.aws import call_with_retry, get_client
from core.exceptions import InvalidStateTransition, RestoreInProgress, SourceNotReady, WarmupIncomplete

from .events import Event, EventBus, EventType
from .gateway import ElastiCacheGateway
from .tracker import SnapshotTracker
from .types import RestoreRequest, RestoreState, SnapshotStatus, utcnow

if TYPE_CHECKING:
    import boto3

logger = logging.getLogger(__name__)

CutoverHandler = Callable[[RestoreRequest], Any]

# create-failed 등 복구 불가 상태
FAILED_GROUP_STATUSES = {"create-failed", "deleting", "deleted"}


def primary_endpoint(group: dict[str, Any]) -> str | None:
    """복제 그룹의 쓰기 엔드포인트 주소 (클러스터 모드 활성화 시 구성 엔드포인트)"""
    configuration = group.get("ConfigurationEndpoint") or {}
    if configuration.get("Address"):
        return configuration["Address"]
    for node_group in group.get("NodeGroups", []):
        address = (node_group.get("PrimaryEndpoint") or {}).get("Address")
        if address:
            return address
    return None


# =============================================================================
# 컷오버 핸들러
# =============================================================================


def logging_cutover(request: RestoreRequest) -> None:
    """트래픽 전환을 운영자가 직접 하는 경우의 기본 핸들러"""
    logger.warning(
        "컷오버 핸들러 미설정: 애플리케이션 엔드포인트를 %s(으)로 직접 전환하세요", request.target_cluster_id
    )


class Route53CnameCutover:
    """Route 53 CNAME을 복원 클러스터 엔드포인트로 UPSERT"""

    def __init__(
        self,
        session: boto3.Session | None,
        gateway: ElastiCacheGateway,
        hosted_zone_id: str,
        record_name: str,
        ttl: int = 60,
        client: Any = None,
    ) -> None:
        self._gateway = gateway
        self.hosted_zone_id = hosted_zone_id
        self.record_name = record_name
        self.ttl = ttl
        self._client = client or get_client(session, "route53")

    def __call__(self, request: RestoreRequest) -> str:
        group = self._gateway.describe_replication_group(request.target_cluster_id) or {}
        endpoint = primary_endpoint(group)
        if not endpoint:
            raise InvalidStateTransition(request.target_cluster_id, request.state.value, "cutover(no endpoint)")

        logger.info("Route 53 전환: %s -> %s", self.record_name, endpoint)
        call_with_retry(
            self._client.change_resource_record_sets,
            service="route53",
            operation="change_resource_record_sets",
            HostedZoneId=self.hosted_zone_id,
            ChangeBatch={
                "Comment": f"cutover to {request.target_cluster_id} ({request.source_snapshot_id})",
                "Changes": [
                    {
                        "Action": "UPSERT",
                        "ResourceRecordSet": {
                            "Name": self.record_name,
                            "Type": "CNAME",
                            "TTL": self.ttl,
                            "ResourceRecords": [{"Value": endpoint}],
                        },
                    }
                ],
            },
        )
        return endpoint


# =============================================================================
# 오케스트레이터
# =============================================================================


class RestoreOrchestrator:
    """블루-그린 복원 상태 머신 소유자

    Args:
        gateway: 복원 대상 리전 게이트웨이
        bus: 이벤트 버스
        tracker: 원본 스냅샷 상태 확인용 (없으면 describe_snapshots로 확인)
        cutover_handler: 트래픽 전환 콜백 (기본: logging_cutover)
    """

    def __init__(
        self,
        gateway: ElastiCacheGateway,
        bus: EventBus,
        tracker: SnapshotTracker | None = None,
        cutover_handler: CutoverHandler | None = None,
    ) -> None:
        self._gateway = gateway
        self._bus = bus
        self._tracker = tracker
        self._cutover_handler = cutover_handler or logging_cutover

        self._active: dict[str, RestoreRequest] = {}
        # 대상 클러스터당 락 하나, _finish 후에도 유지 (같은 대상 재복원 시 재사용)
        self._target_locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, target: str) -> threading.RLock:
        with self._guard:
            return self._target_locks.setdefault(target, threading.RLock())

    def _require(self, target: str) -> RestoreRequest:
        with self._guard:
            request = self._active.get(target)
        if request is None:
            raise InvalidStateTransition(target, "none", "active restore")
        return request

    def _finish(self, request: RestoreRequest) -> None:
        with self._guard:
            self._active.pop(request.target_cluster_id, None)

    def _transition(self, request: RestoreRequest, state: RestoreState, **detail: Any) -> None:
        previous = request.state
        request.transition(state)
        logger.info("복원 상태 전이: %s %s -> %s", request.target_cluster_id, previous.value, state.value)
        self._bus.publish(
            Event(
                type=EventType.RESTORE_STATE_CHANGED,
                cluster_id=request.target_cluster_id,
                snapshot_id=request.source_snapshot_id,
                status=state.value,
                detail={"previous": previous.value, **detail},
            )
        )

    def get(self, target: str) -> RestoreRequest | None:
        with self._guard:
            return self._active.get(target)

    def active(self) -> list[RestoreRequest]:
        with self._guard:
            return list(self._active.values())

    # =========================================================================
    # 복원 흐름
    # =========================================================================

    def request(
        self,
        target: str,
        source_snapshot_id: str,
        node_type: str,
        multi_az: bool = True,
        source_cluster_id: str | None = None,
    ) -> RestoreRequest:
        """복원 요청 생성

        Raises:
            RestoreInProgress: 대상에 활성 요청이 있음
            SourceNotReady: 원본 스냅샷이 available이 아님
        """
        with self._lock_for(target):
            existing = self.get(target)
            if existing is not None:
                raise RestoreInProgress(target, existing.state.value)

            self._check_source(source_snapshot_id)

            request = RestoreRequest(
                target_cluster_id=target,
                source_snapshot_id=source_snapshot_id,
                node_type=node_type,
                multi_az=multi_az,
                source_cluster_id=source_cluster_id,
            )
            with self._guard:
                self._active[target] = request

        logger.info("복원 요청: %s <- %s", target, source_snapshot_id)
        return request

    def _check_source(self, snapshot_id: str) -> None:
        record = self._tracker.get(snapshot_id) if self._tracker else None
        if record is not None:
            # 복사본은 S3 export라 복원 원본이 될 수 없음
            if record.is_copy:
                raise SourceNotReady(snapshot_id, f"{record.trigger.value} ({record.region})")
            if record.status is not SnapshotStatus.AVAILABLE:
                raise SourceNotReady(snapshot_id, record.status.value)
            return

        snapshot = self._gateway.describe_snapshot(snapshot_id)
        status = snapshot.get("SnapshotStatus") if snapshot else None
        if status != "available":
            raise SourceNotReady(snapshot_id, status or "unknown")

    def start_restore(self, target: str) -> RestoreRequest:
        """스냅샷에서 대상 복제 그룹 생성 시작 -> RESTORING"""
        with self._lock_for(target):
            request = self._require(target)
            if request.state is not RestoreState.REQUESTED:
                raise InvalidStateTransition(target, request.state.value, RestoreState.RESTORING.value)

            member = (
                self._gateway.member_cluster_config(request.source_cluster_id) if request.source_cluster_id else None
            )
            self._gateway.create_replication_group_from_snapshot(
                target,
                request.source_snapshot_id,
                request.node_type,
                request.multi_az,
                subnet_group=member.subnet_group if member else None,
            )
            self._transition(request, RestoreState.RESTORING)
            return request

    def check_restore(self, target: str) -> RestoreState:
        """RESTORING 요청의 진행 확인

        그룹이 available이면 원본 클러스터 설정을 동기화하고 WARMING으로,
        생성 실패면 ABORTED로 전이합니다.
        """
        with self._lock_for(target):
            request = self._require(target)
            if request.state is not RestoreState.RESTORING:
                return request.state

            group = self._gateway.describe_replication_group(target)
            status = group.get("Status") if group else None

            if status in FAILED_GROUP_STATUSES:
                self._abort_locked(request, f"복제 그룹 상태 {status}")
                return request.state
            if status != "available":
                logger.debug("복원 진행 중: %s (%s)", target, status)
                return request.state

            synced = False
            if request.source_cluster_id:
                member = self._gateway.member_cluster_config(request.source_cluster_id)
                if member is not None:
                    self._gateway.apply_member_config(target, member)
                    synced = True

            self._transition(request, RestoreState.WARMING, config_synced=synced)
            return request.state

    def confirm_warmup(self, target: str, validated_by: str) -> RestoreRequest:
        """섀도 읽기 검증 완료 신호 기록

        Raises:
            InvalidStateTransition: WARMING 상태가 아님
        """
        with self._lock_for(target):
            request = self._require(target)
            if request.state is not RestoreState.WARMING:
                raise InvalidStateTransition(target, request.state.value, "warmup-confirmed")

            request.warmup_confirmed = True
            request.validated_by = validated_by
            logger.info("워밍 검증 확인: %s (by %s)", target, validated_by)
            return request

    def cutover(self, target: str) -> RestoreRequest:
        """트래픽 전환 -> COMPLETE

        핸들러가 실패하면 CUTOVER 상태로 남고, 같은 호출로 재시도할 수 있습니다.

        Raises:
            WarmupIncomplete: WARMING을 거쳐 확인 신호를 받기 전
        """
        with self._lock_for(target):
            request = self._require(target)

            if request.state is RestoreState.WARMING:
                if not request.warmup_confirmed:
                    raise WarmupIncomplete(target, request.state.value)
                self._transition(request, RestoreState.CUTOVER, validated_by=request.validated_by)
            elif request.state is not RestoreState.CUTOVER:
                raise WarmupIncomplete(target, request.state.value)

            try:
                self._cutover_handler(request)
            except Exception:
                logger.exception("컷오버 핸들러 실패: %s (CUTOVER 상태 유지)", target)
                raise

            self._transition(request, RestoreState.COMPLETE)
            self._finish(request)
            return request

    def abort(self, target: str, reason: str, cleanup: bool = False) -> RestoreRequest:
        """복원 중단 -> ABORTED

        Args:
            target: 대상 클러스터
            reason: 중단 사유 (알림에 포함)
            cleanup: True면 생성 중/완료된 대상 복제 그룹 삭제
        """
        with self._lock_for(target):
            request = self._require(target)
            created = request.passed_through(RestoreState.RESTORING)
            self._abort_locked(request, reason)

            if cleanup and created:
                self._gateway.delete_replication_group(target)
            return request

    def _abort_locked(self, request: RestoreRequest, reason: str) -> None:
        request.abort_reason = reason
        self._transition(request, RestoreState.ABORTED, reason=reason)
        self._finish(request)
        logger.error("복원 중단: %s (%s)", request.target_cluster_id, reason)
        self._bus.publish(
            Event(
                type=EventType.RESTORE_ABORTED,
                cluster_id=request.target_cluster_id,
                snapshot_id=request.source_snapshot_id,
                status=RestoreState.ABORTED.value,
                detail={"reason": reason},
            )
        )

    # =========================================================================
    # 기존 클러스터 폐기
    # =========================================================================

    def decommission(self, old_cluster_id: str, replaced_by: str, final_snapshot: bool = True) -> str | None:
        """컷오버 완료 후 기존 클러스터 삭제 (운영자 명시 작업)

        Returns:
            최종 스냅샷 이름 (final_snapshot=False면 None)

        Raises:
            InvalidStateTransition: 대체 클러스터 복원이 끝나지 않았거나 available이 아님
        """
        if old_cluster_id == replaced_by:
            raise InvalidStateTransition(old_cluster_id, "active", "decommission(self)")

        pending = self.get(replaced_by)
        if pending is not None:
            raise InvalidStateTransition(replaced_by, pending.state.value, "decommission")

        group = self._gateway.describe_replication_group(replaced_by)
        status = group.get("Status") if group else None
        if status != "available":
            raise InvalidStateTransition(replaced_by, status or "missing", "decommission")

        final_name = f"{old_cluster_id}-final-{utcnow():%Y%m%d-%H%M%S}" if final_snapshot else None
        self._gateway.delete_replication_group(old_cluster_id, final_snapshot_name=final_name)
        return final_name
