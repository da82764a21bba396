"""
orchestrator/policy.py - 백업 정책 저장소

클러스터별 BackupPolicy를 보관하고, 저장 시점에 검증합니다.

검증 규칙:
    - retention_days: 1~35 (자동 스냅샷 보존 한도)
    - reserved_memory_percent: 0~100, production 티어는 25~50 권장 범위 강제
    - snapshot_window: "HH:MM-HH:MM" (UTC)
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from core.exceptions import ConfigError, InvalidPolicy, PolicyNotFound

from .types import (
    MAX_RETENTION_DAYS,
    MIN_RETENTION_DAYS,
    PRODUCTION_RESERVED_MEMORY_RANGE,
    SNAPSHOT_WINDOW_PATTERN,
    BackupPolicy,
    PolicyTier,
)

logger = logging.getLogger(__name__)


def validate_policy(policy: BackupPolicy) -> list[str]:
    """정책 위반 사항 목록 반환 (비어 있으면 유효)"""
    errors: list[str] = []

    retention = policy.retention_days
    if not isinstance(retention, int) or isinstance(retention, bool):
        errors.append(f"retention_days는 정수여야 합니다 ({retention!r})")
    elif not MIN_RETENTION_DAYS <= retention <= MAX_RETENTION_DAYS:
        errors.append(f"retention_days는 {MIN_RETENTION_DAYS}~{MAX_RETENTION_DAYS}일이어야 합니다 ({retention})")

    memory = policy.reserved_memory_percent
    if not isinstance(memory, int) or isinstance(memory, bool):
        errors.append(f"reserved_memory_percent는 정수여야 합니다 ({memory!r})")
    elif not 0 <= memory <= 100:
        errors.append(f"reserved_memory_percent는 0~100이어야 합니다 ({memory})")
    elif policy.tier is PolicyTier.PRODUCTION:
        low, high = PRODUCTION_RESERVED_MEMORY_RANGE
        if not low <= memory <= high:
            errors.append(f"production 티어의 reserved_memory_percent는 {low}~{high}이어야 합니다 ({memory})")

    window = SNAPSHOT_WINDOW_PATTERN.match(policy.snapshot_window or "")
    if window is None:
        errors.append(f"snapshot_window 형식은 HH:MM-HH:MM입니다 ({policy.snapshot_window!r})")
    elif window.group(1, 2) == window.group(3, 4):
        errors.append("snapshot_window 시작과 종료가 같습니다")

    return errors


class PolicyStore:
    """스레드 세이프 정책 저장소"""

    def __init__(self) -> None:
        self._policies: dict[str, BackupPolicy] = {}
        self._lock = threading.Lock()

    def get(self, cluster_id: str) -> BackupPolicy:
        """정책 조회

        Raises:
            PolicyNotFound: 등록되지 않은 클러스터
        """
        with self._lock:
            policy = self._policies.get(cluster_id)
        if policy is None:
            raise PolicyNotFound(cluster_id)
        return policy

    def set(self, cluster_id: str, policy: BackupPolicy) -> None:
        """정책 저장

        Raises:
            InvalidPolicy: 검증 실패 또는 cluster_id 불일치
        """
        errors = validate_policy(policy)
        if policy.cluster_id != cluster_id:
            errors.insert(0, f"cluster_id 불일치 ({policy.cluster_id!r})")
        if errors:
            raise InvalidPolicy(cluster_id, errors)

        with self._lock:
            self._policies[cluster_id] = policy
        logger.debug("정책 저장: %s", cluster_id)

    def delete(self, cluster_id: str) -> bool:
        with self._lock:
            return self._policies.pop(cluster_id, None) is not None

    def all(self) -> list[BackupPolicy]:
        with self._lock:
            return sorted(self._policies.values(), key=lambda p: p.cluster_id)

    def __contains__(self, cluster_id: object) -> bool:
        with self._lock:
            return cluster_id in self._policies

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)


def policies_from_mapping(raw: dict[str, Any], store: PolicyStore | None = None) -> PolicyStore:
    """{cluster_id: {...}} 매핑을 검증하며 저장소에 적재

    Raises:
        InvalidPolicy: 첫 번째로 잘못된 정책
    """
    store = store or PolicyStore()
    for cluster_id, data in raw.items():
        try:
            policy = BackupPolicy.from_dict(cluster_id, data)
        except ValueError as e:
            raise InvalidPolicy(cluster_id, [str(e)]) from e
        store.set(cluster_id, policy)
    return store


def load_policies(path: str | Path, store: PolicyStore | None = None) -> PolicyStore:
    """YAML 파일의 policies 섹션을 로드

    Raises:
        ConfigError: 파일이 없거나 형식이 잘못된 경우
        InvalidPolicy: 정책 검증 실패
    """
    policy_file = Path(path)
    if not policy_file.exists():
        raise ConfigError(str(policy_file), "정책 파일이 없습니다")

    try:
        with policy_file.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(str(policy_file), "YAML 파싱 실패", cause=e) from e

    raw = data.get("policies") if isinstance(data, dict) else None
    if not isinstance(raw, dict):
        raise ConfigError(str(policy_file), "policies 매핑이 필요합니다")

    return policies_from_mapping(raw, store)
