"""
tests/orchestrator/test_restore.py - 블루-그린 복원 오케스트레이터 테스트
"""

import threading
from unittest.mock import MagicMock

import pytest

from core.exceptions import InvalidStateTransition, RestoreInProgress, SourceNotReady, WarmupIncomplete
from orchestrator.events import EventBus, EventType
from orchestrator.restore import RestoreOrchestrator, Route53CnameCutover, primary_endpoint
from orchestrator.tracker import SnapshotTracker
from orchestrator.types import RestoreRequest, RestoreState, SnapshotRecord, SnapshotStatus, TriggerKind, utcnow

SOURCE = "fin-redis-rg"
TARGET = "fin-redis-rg-v2"
SNAPSHOT = "fin-redis-rg-deploy-20241001-093000"


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def tracker(gateway, bus):
    instance = SnapshotTracker(gateway, bus)
    record = SnapshotRecord(SNAPSHOT, SOURCE, TriggerKind.PRE_CHANGE, utcnow(), region="ap-northeast-2")
    instance.track(record.resolve(SnapshotStatus.AVAILABLE))
    return instance


@pytest.fixture
def cutover_handler():
    return MagicMock(return_value="endpoint")


@pytest.fixture
def restore(gateway, bus, tracker, cutover_handler):
    return RestoreOrchestrator(gateway, bus, tracker, cutover_handler)


@pytest.fixture
def group_status(elasticache_client):
    """describe_replication_groups가 대상 그룹 상태를 반환하도록 설정"""
    state = {"status": "creating"}

    def describe(**kwargs):
        group_id = kwargs["ReplicationGroupId"]
        status = state["status"] if group_id == TARGET else "available"
        return {
            "ReplicationGroups": [
                {
                    "ReplicationGroupId": group_id,
                    "Status": status,
                    "MemberClusters": [f"{group_id}-001"],
                    "NodeGroups": [{"PrimaryEndpoint": {"Address": f"{group_id}.apn2.cache.amazonaws.com"}}],
                }
            ]
        }

    elasticache_client.describe_replication_groups.side_effect = describe
    return state


def _start(restore, source_cluster=SOURCE):
    restore.request(TARGET, SNAPSHOT, "cache.r6g.large", source_cluster_id=source_cluster)
    restore.start_restore(TARGET)


def _warm(restore, group_status):
    _start(restore)
    group_status["status"] = "available"
    assert restore.check_restore(TARGET) is RestoreState.WARMING


class TestRequest:
    """request 테스트"""

    def test_request(self, restore):
        request = restore.request(TARGET, SNAPSHOT, "cache.r6g.large")

        assert request.state is RestoreState.REQUESTED
        assert restore.get(TARGET) is request
        assert restore.active() == [request]

    def test_duplicate_target_rejected(self, restore):
        """대상 클러스터당 활성 요청은 하나"""
        restore.request(TARGET, SNAPSHOT, "cache.r6g.large")

        with pytest.raises(RestoreInProgress):
            restore.request(TARGET, SNAPSHOT, "cache.r6g.large")

    def test_different_targets_allowed(self, restore):
        restore.request(TARGET, SNAPSHOT, "cache.r6g.large")
        restore.request("fin-redis-rg-v3", SNAPSHOT, "cache.r6g.large")
        assert len(restore.active()) == 2

    def test_source_pending(self, restore, tracker):
        tracker.track(SnapshotRecord("pending-snap", SOURCE, TriggerKind.MANUAL, utcnow()))

        with pytest.raises(SourceNotReady):
            restore.request(TARGET, "pending-snap", "cache.r6g.large")
        assert restore.get(TARGET) is None

    def test_copy_record_rejected(self, restore, tracker, elasticache_client):
        """S3 export 복사본은 복원 원본이 아님"""
        copy = SnapshotRecord(
            "snap-1-us-west-2",
            SOURCE,
            TriggerKind.COPY,
            utcnow(),
            region="us-west-2",
            source_snapshot_id=SNAPSHOT,
            target_bucket="fin-redis-dr-usw2",
        )
        tracker.track(copy.resolve(SnapshotStatus.AVAILABLE))

        with pytest.raises(SourceNotReady) as exc_info:
            restore.request(TARGET, "snap-1-us-west-2", "cache.r6g.large")

        assert exc_info.value.details["status"] == "copy (us-west-2)"
        assert restore.get(TARGET) is None
        elasticache_client.create_replication_group.assert_not_called()

    def test_untracked_source_described(self, gateway, bus, elasticache_client, snapshot_factory):
        restore = RestoreOrchestrator(gateway, bus)
        elasticache_client.describe_snapshots.return_value = {"Snapshots": [snapshot_factory("external")]}

        assert restore.request(TARGET, "external", "cache.r6g.large").source_snapshot_id == "external"

    def test_untracked_missing_source(self, gateway, bus):
        with pytest.raises(SourceNotReady):
            RestoreOrchestrator(gateway, bus).request(TARGET, "missing", "cache.r6g.large")

    def test_concurrent_requests_single_winner(self, restore):
        results, conflicts = [], []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                results.append(restore.request(TARGET, SNAPSHOT, "cache.r6g.large"))
            except RestoreInProgress as e:
                conflicts.append(e)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(conflicts) == 5


class TestRestoreFlow:
    """start_restore -> check_restore -> cutover 테스트"""

    def test_start_restore(self, restore, elasticache_client, group_status, events):
        _start(restore)

        params = elasticache_client.create_replication_group.call_args.kwargs
        assert params["ReplicationGroupId"] == TARGET
        assert params["SnapshotName"] == SNAPSHOT
        assert params["CacheSubnetGroupName"] == "fin-redis-subnets"
        assert restore.get(TARGET).state is RestoreState.RESTORING
        assert events[-1].type is EventType.RESTORE_STATE_CHANGED

    def test_start_twice_rejected(self, restore, group_status):
        _start(restore)
        with pytest.raises(InvalidStateTransition):
            restore.start_restore(TARGET)

    def test_check_while_creating(self, restore, group_status):
        _start(restore)
        assert restore.check_restore(TARGET) is RestoreState.RESTORING

    def test_available_syncs_config(self, restore, elasticache_client, group_status):
        """available이 되면 원본 설정 동기화 후 WARMING"""
        _warm(restore, group_status)

        params = elasticache_client.modify_replication_group.call_args.kwargs
        assert params["ReplicationGroupId"] == TARGET
        assert params["CacheParameterGroupName"] == "fin-redis-params"
        assert params["SecurityGroupIds"] == ["sg-0123456789abcdef0"]

    def test_create_failed_aborts(self, restore, group_status, events):
        _start(restore)
        group_status["status"] = "create-failed"

        assert restore.check_restore(TARGET) is RestoreState.ABORTED
        assert restore.get(TARGET) is None
        assert events[-1].type is EventType.RESTORE_ABORTED

    def test_cutover_before_warmup_confirmed(self, restore, group_status, cutover_handler):
        """검증 확인 전 컷오버는 WarmupIncomplete"""
        _warm(restore, group_status)

        with pytest.raises(WarmupIncomplete):
            restore.cutover(TARGET)

        cutover_handler.assert_not_called()
        assert restore.get(TARGET).state is RestoreState.WARMING

    def test_cutover_while_restoring(self, restore, group_status):
        _start(restore)
        with pytest.raises(WarmupIncomplete):
            restore.cutover(TARGET)

    def test_cutover_after_confirm(self, restore, group_status, cutover_handler):
        _warm(restore, group_status)
        restore.confirm_warmup(TARGET, "sre-oncall")

        request = restore.cutover(TARGET)

        assert request.state is RestoreState.COMPLETE
        assert request.validated_by == "sre-oncall"
        assert [s for s, _ in request.history] == [
            RestoreState.REQUESTED,
            RestoreState.RESTORING,
            RestoreState.WARMING,
            RestoreState.CUTOVER,
            RestoreState.COMPLETE,
        ]
        cutover_handler.assert_called_once_with(request)
        assert restore.get(TARGET) is None

    def test_confirm_outside_warming(self, restore, group_status):
        _start(restore)
        with pytest.raises(InvalidStateTransition):
            restore.confirm_warmup(TARGET, "sre-oncall")

    def test_cutover_handler_failure_retryable(self, restore, group_status, cutover_handler):
        """핸들러 실패 시 CUTOVER 유지, 재호출로 완료"""
        _warm(restore, group_status)
        restore.confirm_warmup(TARGET, "sre-oncall")
        cutover_handler.side_effect = [RuntimeError("route53 down"), "endpoint"]

        with pytest.raises(RuntimeError):
            restore.cutover(TARGET)
        assert restore.get(TARGET).state is RestoreState.CUTOVER

        assert restore.cutover(TARGET).state is RestoreState.COMPLETE

    def test_no_active_request(self, restore):
        with pytest.raises(InvalidStateTransition):
            restore.start_restore(TARGET)


class TestAbort:
    """abort 테스트"""

    def test_abort_requested(self, restore, elasticache_client, events):
        restore.request(TARGET, SNAPSHOT, "cache.r6g.large")

        request = restore.abort(TARGET, "change cancelled", cleanup=True)

        assert request.state is RestoreState.ABORTED
        assert request.abort_reason == "change cancelled"
        assert events[-1].detail == {"reason": "change cancelled"}
        elasticache_client.delete_replication_group.assert_not_called()

    def test_abort_warming_with_cleanup(self, restore, elasticache_client, group_status):
        _warm(restore, group_status)

        restore.abort(TARGET, "validation mismatch", cleanup=True)

        elasticache_client.delete_replication_group.assert_called_once_with(
            ReplicationGroupId=TARGET, RetainPrimaryCluster=False
        )

    def test_abort_allows_new_request(self, restore):
        restore.request(TARGET, SNAPSHOT, "cache.r6g.large")
        lock = restore._lock_for(TARGET)
        restore.abort(TARGET, "retry")

        assert restore.request(TARGET, SNAPSHOT, "cache.r6g.large").state is RestoreState.REQUESTED
        assert restore._lock_for(TARGET) is lock
        assert len(restore._target_locks) == 1

    def test_abort_unknown(self, restore):
        with pytest.raises(InvalidStateTransition):
            restore.abort(TARGET, "x")


class TestDecommission:
    """decommission 테스트"""

    def test_decommission_after_cutover(self, restore, elasticache_client, group_status):
        group_status["status"] = "available"

        final_name = restore.decommission(SOURCE, TARGET)

        assert final_name.startswith(f"{SOURCE}-final-")
        elasticache_client.delete_replication_group.assert_called_once_with(
            ReplicationGroupId=SOURCE, RetainPrimaryCluster=False, FinalSnapshotIdentifier=final_name
        )

    def test_without_final_snapshot(self, restore, elasticache_client, group_status):
        group_status["status"] = "available"

        assert restore.decommission(SOURCE, TARGET, final_snapshot=False) is None
        assert "FinalSnapshotIdentifier" not in elasticache_client.delete_replication_group.call_args.kwargs

    def test_refused_while_restore_active(self, restore, elasticache_client, group_status):
        """대체 클러스터의 복원이 끝나기 전에는 폐기 불가"""
        _warm(restore, group_status)

        with pytest.raises(InvalidStateTransition):
            restore.decommission(SOURCE, TARGET)
        elasticache_client.delete_replication_group.assert_not_called()

    def test_refused_when_replacement_not_available(self, restore, elasticache_client, group_status):
        group_status["status"] = "modifying"

        with pytest.raises(InvalidStateTransition):
            restore.decommission(SOURCE, TARGET)

    def test_refused_same_cluster(self, restore):
        with pytest.raises(InvalidStateTransition):
            restore.decommission(SOURCE, SOURCE)


class TestRoute53Cutover:
    """Route53CnameCutover 테스트"""

    def test_primary_endpoint(self):
        assert primary_endpoint({"ConfigurationEndpoint": {"Address": "cfg"}}) == "cfg"
        assert primary_endpoint({"NodeGroups": [{"PrimaryEndpoint": {"Address": "primary"}}]}) == "primary"
        assert primary_endpoint({}) is None

    def test_upsert_cname(self, gateway, group_status):
        group_status["status"] = "available"
        route53 = MagicMock()
        handler = Route53CnameCutover(None, gateway, "Z123", "redis.fin.internal", ttl=30, client=route53)

        endpoint = handler(RestoreRequest(TARGET, SNAPSHOT, "cache.r6g.large"))

        assert endpoint == f"{TARGET}.apn2.cache.amazonaws.com"
        change = route53.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
        assert change["Action"] == "UPSERT"
        assert change["ResourceRecordSet"]["Name"] == "redis.fin.internal"
        assert change["ResourceRecordSet"]["TTL"] == 30
        assert change["ResourceRecordSet"]["ResourceRecords"] == [{"Value": endpoint}]
