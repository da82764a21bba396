"""
core/aws - AWS API 호출 공통 모듈

boto3 client 생성과 API 호출 재시도를 한 곳에서 관리합니다.

주요 구성 요소:
- get_client: adaptive retry/타임아웃이 설정된 boto3 client 생성
- RetryConfig: 지수 백오프 + 지터 재시도 설정
- call_with_retry: 일시 오류를 재시도하고 AWS 예외를 도메인 예외로 변환

Example:
    from core.aws import RetryConfig, call_with_retry, get_client

    elasticache = get_client(session, "elasticache", region_name="ap-northeast-2")
    response = call_with_retry(
        elasticache.describe_snapshots,
        service="elasticache",
        operation="describe_snapshots",
        retry_config=RetryConfig(max_retries=2),
        SnapshotName="fin-redis-rg-deploy-20241001",
    )
"""

from .client import get_client
from .retry import (
    DEFAULT_RETRY_CONFIG,
    RETRYABLE_ERROR_CODES,
    RetryConfig,
    call_with_retry,
    get_error_code,
    is_retryable,
)

__all__: list[str] = [
    "get_client",
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "RETRYABLE_ERROR_CODES",
    "call_with_retry",
    "get_error_code",
    "is_retryable",
]
