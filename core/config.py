"""
core/config.py - 중앙 설정 관리

YAML 설정 파일을 읽어 OrchestratorSettings로 변환합니다.
일부 키는 환경 변수로 덮어쓸 수 있습니다.

설정 파일 탐색 순서:
    1. load_settings(path)에 전달된 경로
    2. ESO_CONFIG 환경 변수
    3. ./eso.yaml (없으면 기본값만 사용)

환경 변수:
    ESO_CONFIG: 설정 파일 경로
    ESO_REGION: 기본 리전
    ESO_PROFILE: AWS 프로파일
    ESO_POLL_INTERVAL: 트래커 폴링 간격 (초)

설정 파일 예시:
    region: ap-northeast-2
    poll_interval_seconds: 30
    pending_alert_after_minutes: 90
    retry:
      max_retries: 3
      base_delay: 1.0
    dr_buckets:
      us-west-2: fin-redis-dr-usw2
    sinks:
      - type: sns
        topic_arn: arn:aws:sns:ap-northeast-2:123456789012:redis-backup-alerts
      - type: webhook
        url: https://hooks.slack.com/services/T000/B000/XXXX
    cutover:
      hosted_zone_id: Z0123456789ABC
      record_name: redis.fin.internal
    policies:
      fin-redis-rg:
        retention_days: 7
        snapshot_window: "17:00-18:00"
        reserved_memory_percent: 25
        cross_region_target: us-west-2
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from core.aws.retry import RetryConfig
from core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DISTRIBUTION_NAME = "elasticache-snapshot-orchestrator"
DEFAULT_REGION = "ap-northeast-2"
DEFAULT_CONFIG_FILE = "eso.yaml"

SINK_TYPES = ("log", "sns", "eventbridge", "webhook")


@dataclass
class CutoverSettings:
    """Route 53 기반 컷오버 설정 (hosted_zone_id가 없으면 로그 전용 핸들러 사용)"""

    hosted_zone_id: str | None = None
    record_name: str | None = None
    ttl: int = 60


@dataclass
class OrchestratorSettings:
    """오케스트레이터 설정

    Attributes:
        region: 소스 클러스터 리전
        profile: AWS 프로파일 이름 (None이면 기본 자격 증명 체인)
        owner: 클러스터 소유권을 잡을 때 사용하는 오너 식별자
        poll_interval_seconds: 트래커 폴링 간격
        pending_alert_after_minutes: pending 상태 알림 기준 시간
        retry: API 재시도 설정
        dr_buckets: 대상 리전별 스냅샷 export 버킷
        sinks: 알림 싱크 설정 목록 ({"type": ..., ...})
        forward_status_events: 실패 외 상태 이벤트도 싱크로 전달할지 여부
        cutover: 컷오버 설정
        policies: 클러스터별 백업 정책 원본 딕셔너리
    """

    region: str = DEFAULT_REGION
    profile: str | None = None
    owner: str = field(default_factory=lambda: f"eso@{socket.gethostname()}")
    poll_interval_seconds: float = 30.0
    pending_alert_after_minutes: float = 90.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    dr_buckets: dict[str, str] = field(default_factory=dict)
    sinks: list[dict[str, Any]] = field(default_factory=list)
    forward_status_events: bool = False
    cutover: CutoverSettings = field(default_factory=CutoverSettings)
    policies: dict[str, dict[str, Any]] = field(default_factory=dict)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(str(path), "YAML 파싱 실패", cause=e) from e

    if not isinstance(data, dict):
        raise ConfigError(str(path), "최상위 구조는 매핑이어야 합니다")
    return data


def _positive_float(key: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(key, f"숫자가 아닙니다: {value!r}", cause=e) from e
    if result <= 0:
        raise ConfigError(key, f"0보다 커야 합니다: {value!r}")
    return result


def _parse_sinks(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("sinks", "목록이어야 합니다")

    sinks = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or item.get("type") not in SINK_TYPES:
            raise ConfigError(f"sinks[{i}]", f"type은 {', '.join(SINK_TYPES)} 중 하나여야 합니다")
        sinks.append(dict(item))
    return sinks


def settings_from_dict(data: dict[str, Any]) -> OrchestratorSettings:
    """딕셔너리(YAML 로드 결과)에서 설정 생성

    Raises:
        ConfigError: 값의 타입/범위가 잘못된 경우
    """
    result = OrchestratorSettings()

    if "region" in data:
        result.region = str(data["region"])
    if data.get("profile"):
        result.profile = str(data["profile"])
    if data.get("owner"):
        result.owner = str(data["owner"])
    if "poll_interval_seconds" in data:
        result.poll_interval_seconds = _positive_float("poll_interval_seconds", data["poll_interval_seconds"])
    if "pending_alert_after_minutes" in data:
        result.pending_alert_after_minutes = _positive_float(
            "pending_alert_after_minutes", data["pending_alert_after_minutes"]
        )

    retry = data.get("retry") or {}
    if not isinstance(retry, dict):
        raise ConfigError("retry", "매핑이어야 합니다")
    try:
        result.retry = RetryConfig(**retry)
    except TypeError as e:
        raise ConfigError("retry", "알 수 없는 키가 있습니다", cause=e) from e

    buckets = data.get("dr_buckets") or {}
    if not isinstance(buckets, dict):
        raise ConfigError("dr_buckets", "리전 -> 버킷 매핑이어야 합니다")
    result.dr_buckets = {str(k): str(v) for k, v in buckets.items()}

    result.sinks = _parse_sinks(data.get("sinks"))
    result.forward_status_events = bool(data.get("forward_status_events", False))

    cutover = data.get("cutover") or {}
    if not isinstance(cutover, dict):
        raise ConfigError("cutover", "매핑이어야 합니다")
    result.cutover = CutoverSettings(
        hosted_zone_id=cutover.get("hosted_zone_id"),
        record_name=cutover.get("record_name"),
        ttl=int(cutover.get("ttl", 60)),
    )

    policies = data.get("policies") or {}
    if not isinstance(policies, dict):
        raise ConfigError("policies", "클러스터 ID -> 정책 매핑이어야 합니다")
    result.policies = {str(k): dict(v or {}) for k, v in policies.items()}

    return result


def _apply_env_overrides(result: OrchestratorSettings) -> OrchestratorSettings:
    if os.environ.get("ESO_REGION"):
        result.region = os.environ["ESO_REGION"]
    if os.environ.get("ESO_PROFILE"):
        result.profile = os.environ["ESO_PROFILE"]
    if os.environ.get("ESO_POLL_INTERVAL"):
        result.poll_interval_seconds = _positive_float("ESO_POLL_INTERVAL", os.environ["ESO_POLL_INTERVAL"])
    return result


def load_settings(path: str | Path | None = None) -> OrchestratorSettings:
    """설정 파일 로드 + 환경 변수 적용

    Args:
        path: 설정 파일 경로 (None이면 ESO_CONFIG, ./eso.yaml 순으로 탐색)

    Returns:
        OrchestratorSettings

    Raises:
        ConfigError: 명시한 파일이 없거나 내용이 잘못된 경우
    """
    explicit = path or os.environ.get("ESO_CONFIG")
    if explicit:
        config_file = Path(explicit)
        if not config_file.exists():
            raise ConfigError(str(config_file), "설정 파일이 없습니다")
        data = _read_yaml(config_file)
    elif Path(DEFAULT_CONFIG_FILE).exists():
        data = _read_yaml(Path(DEFAULT_CONFIG_FILE))
    else:
        logger.debug("설정 파일 없음, 기본값 사용")
        data = {}

    return _apply_env_overrides(settings_from_dict(data))


def get_version() -> str:
    """설치된 배포판 버전 반환 (소스 트리에서 실행 시 0.0.0)"""
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return "0.0.0"
