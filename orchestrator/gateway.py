"""
orchestrator/gateway.py - ElastiCache 컨트롤 플레인 게이트웨이

오케스트레이터가 호출하는 AWS API를 한 곳에 모읍니다.
모든 호출은 core.aws.call_with_retry를 거치므로, 일시 오류는 재시도 후
ExternalAPIFailure로, 그 외 오류는 APICallError로 전달됩니다.
describe 계열의 NotFound는 None으로 변환합니다.

필요 권한:
    elasticache:CreateSnapshot, CopySnapshot, DescribeSnapshots, DeleteSnapshot,
    elasticache:DescribeReplicationGroups, ModifyReplicationGroup,
    elasticache:CreateReplicationGroup, DeleteReplicationGroup,
    elasticache:DescribeCacheClusters, DescribeCacheParameters,
    s3:ListBucket (DR export 버킷)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from core.aws import RetryConfig, call_with_retry, get_client
from core.exceptions import APICallError, is_not_found

from .types import SnapshotRecord, SnapshotStatus

if TYPE_CHECKING:
    import boto3

logger = logging.getLogger(__name__)

SERVICE = "elasticache"


@dataclass(frozen=True)
class Observation:
    """스냅샷 상태 관측 결과"""

    status: SnapshotStatus
    size: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class MemberClusterConfig:
    """복제 그룹 멤버 클러스터 설정 (복원 후 동기화 대상)"""

    parameter_group: str | None
    security_group_ids: tuple[str, ...]
    subnet_group: str | None


class ElastiCacheGateway:
    """리전 하나에 묶인 ElastiCache API 래퍼

    Args:
        session: boto3 Session
        region: 대상 리전
        retry_config: API 재시도 설정
        client: 주입할 elasticache client (테스트용)
        s3_client: 주입할 s3 client (테스트용)
    """

    def __init__(
        self,
        session: boto3.Session | None,
        region: str,
        retry_config: RetryConfig | None = None,
        client: Any = None,
        s3_client: Any = None,
    ) -> None:
        self.region = region
        self._session = session
        self._retry = retry_config
        self._client = client
        self._s3 = s3_client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_client(self._session, SERVICE, region_name=self.region)
        return self._client

    @property
    def s3(self) -> Any:
        if self._s3 is None:
            self._s3 = get_client(self._session, "s3", region_name=self.region)
        return self._s3

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self.client, operation)
        return call_with_retry(method, service=SERVICE, operation=operation, retry_config=self._retry, **kwargs)

    def _describe_or_none(self, operation: str, **kwargs: Any) -> dict[str, Any] | None:
        try:
            return self._call(operation, **kwargs)
        except APICallError as e:
            if is_not_found(e):
                return None
            raise

    # =========================================================================
    # 스냅샷
    # =========================================================================

    def create_snapshot(self, cluster_id: str, snapshot_name: str, kms_key_id: str | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {"ReplicationGroupId": cluster_id, "SnapshotName": snapshot_name}
        if kms_key_id:
            params["KmsKeyId"] = kms_key_id

        logger.info("스냅샷 생성 요청: %s -> %s", cluster_id, snapshot_name)
        response = self._call("create_snapshot", **params)
        return response.get("Snapshot", {})

    def describe_snapshot(self, snapshot_name: str) -> dict[str, Any] | None:
        response = self._describe_or_none("describe_snapshots", SnapshotName=snapshot_name)
        if not response or not response.get("Snapshots"):
            return None
        return response["Snapshots"][0]

    def list_snapshots(self, cluster_id: str) -> list[dict[str, Any]]:
        """복제 그룹의 스냅샷 목록 (수동 + 자동)"""
        snapshots: list[dict[str, Any]] = []
        marker: str | None = None

        while True:
            params: dict[str, Any] = {"ReplicationGroupId": cluster_id}
            if marker:
                params["Marker"] = marker
            response = self._describe_or_none("describe_snapshots", **params)
            if not response:
                break
            snapshots.extend(response.get("Snapshots", []))
            marker = response.get("Marker")
            if not marker:
                break

        return snapshots

    def export_snapshot(
        self,
        source_name: str,
        target_name: str,
        bucket: str,
        kms_key_id: str | None = None,
    ) -> dict[str, Any]:
        """스냅샷을 DR 버킷으로 export (copy_snapshot + TargetBucket)

        버킷 -> 대상 리전 복제는 S3 복제 규칙이 담당합니다.
        """
        params: dict[str, Any] = {
            "SourceSnapshotName": source_name,
            "TargetSnapshotName": target_name,
            "TargetBucket": bucket,
        }
        if kms_key_id:
            params["KmsKeyId"] = kms_key_id

        logger.info("스냅샷 export 요청: %s -> s3://%s/%s", source_name, bucket, target_name)
        response = self._call("copy_snapshot", **params)
        return response.get("Snapshot", {})

    def export_exists(self, bucket: str, prefix: str) -> bool:
        response = call_with_retry(
            self.s3.list_objects_v2,
            service="s3",
            operation="list_objects_v2",
            retry_config=self._retry,
            Bucket=bucket,
            Prefix=prefix,
            MaxKeys=1,
        )
        return response.get("KeyCount", 0) > 0

    def delete_snapshot(self, snapshot_name: str) -> None:
        logger.info("스냅샷 삭제 요청: %s", snapshot_name)
        self._call("delete_snapshot", SnapshotName=snapshot_name)

    def observe(self, record: SnapshotRecord) -> Observation:
        """추적 중인 레코드의 현재 상태 관측

        일반 스냅샷은 describe_snapshots 결과를, 복사본은 원본의 export 진행
        상태와 버킷 객체 존재 여부를 봅니다. 사라진 스냅샷은 FAILED입니다.
        """
        if record.is_copy:
            return self._observe_export(record)

        snapshot = self.describe_snapshot(record.snapshot_id)
        if snapshot is None:
            return Observation(SnapshotStatus.FAILED, failure_reason="스냅샷이 존재하지 않습니다")

        status = SnapshotStatus.from_api(snapshot.get("SnapshotStatus"))
        node_snapshots = snapshot.get("NodeSnapshots") or [{}]
        reason = f"SnapshotStatus={snapshot.get('SnapshotStatus')}" if status is SnapshotStatus.FAILED else None
        return Observation(status, size=node_snapshots[0].get("CacheSize"), failure_reason=reason)

    def _observe_export(self, record: SnapshotRecord) -> Observation:
        source = self.describe_snapshot(record.source_snapshot_id or "")
        if source is None:
            return Observation(SnapshotStatus.FAILED, failure_reason="원본 스냅샷이 존재하지 않습니다")

        if source.get("SnapshotStatus") == "exporting":
            return Observation(SnapshotStatus.PENDING)

        if record.target_bucket and self.export_exists(record.target_bucket, record.snapshot_id):
            return Observation(SnapshotStatus.AVAILABLE)

        return Observation(SnapshotStatus.FAILED, failure_reason="export 종료 후 버킷에 객체가 없습니다")

    # =========================================================================
    # 복제 그룹
    # =========================================================================

    def describe_replication_group(self, cluster_id: str) -> dict[str, Any] | None:
        response = self._describe_or_none("describe_replication_groups", ReplicationGroupId=cluster_id)
        if not response or not response.get("ReplicationGroups"):
            return None
        return response["ReplicationGroups"][0]

    def modify_snapshot_settings(self, cluster_id: str, retention_days: int, snapshot_window: str) -> None:
        logger.info("자동 스냅샷 설정 변경: %s (보존 %d일, %s)", cluster_id, retention_days, snapshot_window)
        self._call(
            "modify_replication_group",
            ReplicationGroupId=cluster_id,
            SnapshotRetentionLimit=retention_days,
            SnapshotWindow=snapshot_window,
            ApplyImmediately=True,
        )

    def member_cluster_config(self, cluster_id: str) -> MemberClusterConfig | None:
        """복제 그룹 첫 멤버의 파라미터 그룹/보안 그룹/서브넷 그룹"""
        group = self.describe_replication_group(cluster_id)
        if not group or not group.get("MemberClusters"):
            return None

        response = self._describe_or_none("describe_cache_clusters", CacheClusterId=group["MemberClusters"][0])
        if not response or not response.get("CacheClusters"):
            return None

        cluster = response["CacheClusters"][0]
        return MemberClusterConfig(
            parameter_group=(cluster.get("CacheParameterGroup") or {}).get("CacheParameterGroupName"),
            security_group_ids=tuple(sg["SecurityGroupId"] for sg in cluster.get("SecurityGroups", [])),
            subnet_group=cluster.get("CacheSubnetGroupName"),
        )

    def get_parameter(self, parameter_group: str, name: str) -> str | None:
        marker: str | None = None
        while True:
            params: dict[str, Any] = {"CacheParameterGroupName": parameter_group}
            if marker:
                params["Marker"] = marker
            response = self._describe_or_none("describe_cache_parameters", **params)
            if not response:
                return None
            for parameter in response.get("Parameters", []):
                if parameter.get("ParameterName") == name:
                    return parameter.get("ParameterValue")
            marker = response.get("Marker")
            if not marker:
                return None

    def create_replication_group_from_snapshot(
        self,
        target_cluster_id: str,
        snapshot_name: str,
        node_type: str,
        multi_az: bool,
        subnet_group: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "ReplicationGroupId": target_cluster_id,
            "ReplicationGroupDescription": f"restored from {snapshot_name}",
            "SnapshotName": snapshot_name,
            "CacheNodeType": node_type,
            "Engine": "redis",
            "MultiAZEnabled": multi_az,
            "AutomaticFailoverEnabled": multi_az,
            "NumCacheClusters": 2 if multi_az else 1,
        }
        if subnet_group:
            params["CacheSubnetGroupName"] = subnet_group

        logger.info("스냅샷에서 복제 그룹 생성: %s <- %s (%s)", target_cluster_id, snapshot_name, node_type)
        response = self._call("create_replication_group", **params)
        return response.get("ReplicationGroup", {})

    def apply_member_config(self, cluster_id: str, config: MemberClusterConfig) -> None:
        params: dict[str, Any] = {"ReplicationGroupId": cluster_id, "ApplyImmediately": True}
        if config.parameter_group:
            params["CacheParameterGroupName"] = config.parameter_group
        if config.security_group_ids:
            params["SecurityGroupIds"] = list(config.security_group_ids)

        logger.info("복원 클러스터 설정 동기화: %s", cluster_id)
        self._call("modify_replication_group", **params)

    def delete_replication_group(self, cluster_id: str, final_snapshot_name: str | None = None) -> None:
        params: dict[str, Any] = {"ReplicationGroupId": cluster_id, "RetainPrimaryCluster": False}
        if final_snapshot_name:
            params["FinalSnapshotIdentifier"] = final_snapshot_name

        logger.warning("복제 그룹 삭제 요청: %s (최종 스냅샷: %s)", cluster_id, final_snapshot_name or "없음")
        self._call("delete_replication_group", **params)
