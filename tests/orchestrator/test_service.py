"""
tests/orchestrator/test_service.py - 오케스트레이터 조립/이벤트 체인 테스트
"""

from unittest.mock import MagicMock

import pytest

from core.config import CutoverSettings
from core.exceptions import SchedulingConflict, SnapshotFailed, SourceNotReady
from orchestrator import SnapshotOrchestrator
from orchestrator.alerts import AlertSink, LogSink
from orchestrator.restore import Route53CnameCutover, logging_cutover
from orchestrator.types import ChangeReason, SnapshotStatus, TriggerKind

CLUSTER = "fin-redis-rg"


class RecordingSink(AlertSink):
    name = "recording"

    def __init__(self):
        self.payloads = []

    def send(self, payload):
        self.payloads.append(payload)


@pytest.fixture
def describe_by_name(elasticache_client, snapshot_factory):
    """describe_snapshots가 요청한 이름의 스냅샷을 주어진 상태로 반환"""
    state = {"status": "available"}

    def describe(**kwargs):
        name = kwargs.get("SnapshotName")
        if name is None:
            return {"Snapshots": []}
        return {"Snapshots": [snapshot_factory(name, state["status"])]}

    elasticache_client.describe_snapshots.side_effect = describe
    return state


class TestPreChangeSnapshot:
    """pre_change_snapshot -> 자동 복사 체인 테스트"""

    def test_no_wait_returns_pending(self, orch, elasticache_client):
        record = orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, wait=False)

        assert record.status is SnapshotStatus.PENDING
        assert record.trigger is TriggerKind.PRE_CHANGE
        elasticache_client.copy_snapshot.assert_not_called()

    def test_wait_triggers_cross_region_copy(self, orch, elasticache_client, describe_by_name):
        """available이 되면 정책의 DR 리전으로 복사 시작"""
        record = orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, timeout=5)

        assert record.status is SnapshotStatus.AVAILABLE
        assert orch.tracker.get(f"{record.snapshot_id}-us-west-2").trigger is TriggerKind.COPY
        params = elasticache_client.copy_snapshot.call_args.kwargs
        assert params["SourceSnapshotName"] == record.snapshot_id
        assert params["TargetBucket"] == "fin-redis-dr-usw2"

    def test_wait_for_copies(self, orch, describe_by_name):
        record = orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, timeout=5)

        copies = orch.wait_for_copies(timeout=5)

        assert all(c.status is SnapshotStatus.AVAILABLE for c in copies)
        assert orch.tracker.get(f"{record.snapshot_id}-us-west-2").status is SnapshotStatus.AVAILABLE

    def test_wait_failed(self, orch, describe_by_name):
        describe_by_name["status"] = "failed"

        with pytest.raises(SnapshotFailed):
            orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, timeout=5)

    def test_conflict(self, orch):
        orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, wait=False)

        with pytest.raises(SchedulingConflict):
            orch.pre_change_snapshot(CLUSTER, ChangeReason.PARAMETER_CHANGE, wait=False)

    def test_failure_alert_reaches_sink(self, gateway, settings, describe_by_name):
        sink = RecordingSink()
        describe_by_name["status"] = "failed"

        with SnapshotOrchestrator(gateway, settings, sinks=[sink]) as orch:
            record = orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, wait=False)
            orch.tracker.poll_once()
            orch.alerts.flush(timeout=5)

        assert [p["event"] for p in sink.payloads] == ["snapshot.failed"]
        assert sink.payloads[0]["snapshot_id"] == record.snapshot_id


class TestPolicies:
    """apply_policies / check_drift 테스트"""

    def test_apply_policies_no_change(self, orch, elasticache_client):
        assert orch.apply_policies() == {CLUSTER: False}
        elasticache_client.modify_replication_group.assert_not_called()

    def test_apply_policies_changes(self, gateway, settings, elasticache_client):
        settings.policies[CLUSTER]["retention_days"] = 14

        with SnapshotOrchestrator(gateway, settings) as orch:
            assert orch.apply_policies() == {CLUSTER: True}

        assert elasticache_client.modify_replication_group.call_args.kwargs["SnapshotRetentionLimit"] == 14

    def test_check_drift(self, gateway, settings):
        settings.policies[CLUSTER]["snapshot_window"] = "03:00-04:00"

        with SnapshotOrchestrator(gateway, settings) as orch:
            drift = orch.check_drift()

        assert list(drift) == [CLUSTER]
        assert drift[CLUSTER][0].field == "snapshot_window"

    def test_no_drift(self, orch):
        assert orch.check_drift() == {}


class TestAdoptSnapshot:
    """adopt_snapshot 테스트"""

    def test_adopt_existing_aws_snapshot(self, orch, describe_by_name):
        record = orch.adopt_snapshot("fin-redis-rg-manual")

        assert record.status is SnapshotStatus.AVAILABLE
        assert orch.tracker.get("fin-redis-rg-manual") == record

    def test_adopt_returns_tracked(self, orch):
        tracked = orch.pre_change_snapshot(CLUSTER, ChangeReason.DEPLOY, wait=False)
        assert orch.adopt_snapshot(tracked.snapshot_id) is tracked

    def test_adopt_missing(self, orch):
        with pytest.raises(SourceNotReady):
            orch.adopt_snapshot("missing")


class TestFromSettings:
    """from_settings 테스트"""

    def test_defaults(self, settings):
        session = MagicMock()

        orch = SnapshotOrchestrator.from_settings(settings, session=session)
        try:
            assert orch.gateway.region == "ap-northeast-2"
            assert isinstance(orch.alerts.sinks[0], LogSink)
            assert orch.restore._cutover_handler is logging_cutover
        finally:
            orch.close()

    def test_route53_cutover_configured(self, settings):
        session = MagicMock()
        settings.cutover = CutoverSettings(hosted_zone_id="Z123", record_name="redis.fin.internal", ttl=30)

        orch = SnapshotOrchestrator.from_settings(settings, session=session)
        try:
            handler = orch.restore._cutover_handler
            assert isinstance(handler, Route53CnameCutover)
            assert handler.ttl == 30
        finally:
            orch.close()
