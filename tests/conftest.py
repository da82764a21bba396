"""
tests/conftest.py - pytest 공통 픽스처

AWS API 모킹과 테스트 헬퍼를 제공합니다.

Usage:
    def test_something(elasticache_client, gateway, orch):
        # elasticache_client: MagicMock elasticache client (기본 응답 설정됨)
        # gateway: 위 client를 쓰는 ElastiCacheGateway (재시도 대기 없음)
        # orch: 위 gateway를 쓰는 SnapshotOrchestrator
        pass
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

# 프로젝트 루트를 sys.path에 추가
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from core.aws import RetryConfig  # noqa: E402
from core.config import OrchestratorSettings  # noqa: E402

CLUSTER_ID = "fin-redis-rg"
REGION = "ap-northeast-2"
DR_REGION = "us-west-2"
DR_BUCKET = "fin-redis-dr-usw2"


# =============================================================================
# 환경 설정
# =============================================================================


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """테스트 환경 설정"""
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    for key in ("ESO_CONFIG", "ESO_REGION", "ESO_PROFILE", "ESO_POLL_INTERVAL"):
        monkeypatch.delenv(key, raising=False)

    yield


# =============================================================================
# 헬퍼
# =============================================================================


def make_client_error(code: str, message: str = "error", operation: str = "DescribeSnapshots") -> ClientError:
    """botocore ClientError 생성"""
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def snapshot_response(name: str, status: str = "available", cluster_id: str = CLUSTER_ID, **extra):
    """describe_snapshots 응답 항목"""
    from datetime import datetime, timezone

    item = {
        "SnapshotName": name,
        "ReplicationGroupId": cluster_id,
        "SnapshotStatus": status,
        "SnapshotSource": "manual",
        "NodeSnapshots": [
            {
                "CacheClusterId": f"{cluster_id}-001",
                "CacheSize": "6 MB",
                "SnapshotCreateTime": datetime(2024, 10, 1, 9, 30, tzinfo=timezone.utc),
            }
        ],
    }
    item.update(extra)
    return item


@pytest.fixture
def client_error():
    """ClientError 팩토리 픽스처"""
    return make_client_error


@pytest.fixture
def snapshot_factory():
    """describe_snapshots 응답 항목 팩토리 픽스처"""
    return snapshot_response


# =============================================================================
# AWS 모킹 픽스처
# =============================================================================


@pytest.fixture
def elasticache_client():
    """ElastiCache 클라이언트 모킹

    기본 상태:
        - fin-redis-rg: 보존 7일, 17:00-18:00, 멤버 fin-redis-rg-001
        - 스냅샷 생성은 creating 상태로 응답
        - reserved-memory-percent = 25
    """
    mock_client = MagicMock()

    mock_client.describe_replication_groups.return_value = {
        "ReplicationGroups": [
            {
                "ReplicationGroupId": CLUSTER_ID,
                "Status": "available",
                "SnapshotRetentionLimit": 7,
                "SnapshotWindow": "17:00-18:00",
                "MemberClusters": [f"{CLUSTER_ID}-001", f"{CLUSTER_ID}-002"],
                "NodeGroups": [{"PrimaryEndpoint": {"Address": "fin-redis-rg.abc123.ng.0001.apn2.cache.amazonaws.com"}}],
            }
        ]
    }

    mock_client.describe_cache_clusters.return_value = {
        "CacheClusters": [
            {
                "CacheClusterId": f"{CLUSTER_ID}-001",
                "CacheParameterGroup": {"CacheParameterGroupName": "fin-redis-params"},
                "SecurityGroups": [{"SecurityGroupId": "sg-0123456789abcdef0", "Status": "active"}],
                "CacheSubnetGroupName": "fin-redis-subnets",
            }
        ]
    }

    mock_client.describe_cache_parameters.return_value = {
        "Parameters": [
            {"ParameterName": "maxmemory-policy", "ParameterValue": "volatile-lru"},
            {"ParameterName": "reserved-memory-percent", "ParameterValue": "25"},
        ]
    }

    def create_snapshot(**kwargs):
        return {"Snapshot": snapshot_response(kwargs["SnapshotName"], "creating", kwargs["ReplicationGroupId"])}

    mock_client.create_snapshot.side_effect = create_snapshot
    mock_client.describe_snapshots.return_value = {"Snapshots": []}
    mock_client.copy_snapshot.return_value = {"Snapshot": {"SnapshotStatus": "exporting"}}
    mock_client.create_replication_group.return_value = {"ReplicationGroup": {"Status": "creating"}}

    yield mock_client


@pytest.fixture
def s3_client():
    """S3 클라이언트 모킹 (DR 버킷에 export 객체 있음)"""
    mock_client = MagicMock()
    mock_client.list_objects_v2.return_value = {"KeyCount": 1, "Contents": [{"Key": "x"}]}
    yield mock_client


@pytest.fixture
def retry_config():
    """대기 없는 재시도 설정"""
    return RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def gateway(elasticache_client, s3_client, retry_config):
    """MagicMock client를 쓰는 ElastiCacheGateway"""
    from orchestrator.gateway import ElastiCacheGateway

    return ElastiCacheGateway(None, REGION, retry_config, client=elasticache_client, s3_client=s3_client)


# =============================================================================
# 오케스트레이터 픽스처
# =============================================================================


@pytest.fixture
def policy_data():
    """정책 원본 딕셔너리"""
    return {
        "retention_days": 7,
        "snapshot_window": "17:00-18:00",
        "reserved_memory_percent": 25,
        "cross_region_target": DR_REGION,
    }


@pytest.fixture
def settings(policy_data, retry_config):
    """테스트용 OrchestratorSettings"""
    return OrchestratorSettings(
        region=REGION,
        owner="eso@test",
        poll_interval_seconds=0.01,
        retry=retry_config,
        dr_buckets={DR_REGION: DR_BUCKET},
        policies={CLUSTER_ID: dict(policy_data)},
    )


@pytest.fixture
def orch(gateway, settings):
    """MagicMock gateway 기반 SnapshotOrchestrator"""
    from orchestrator import SnapshotOrchestrator

    instance = SnapshotOrchestrator(gateway, settings)
    yield instance
    instance.close()
