"""
core/aws/retry.py - AWS API 재시도 유틸리티

AWS API 에러 코드 추출, 재시도 가능 여부 판단,
지수 백오프 재시도 실행을 제공합니다.

주요 구성 요소:
- RetryConfig: 재시도 설정 (지수 백오프 + 지터)
- get_error_code: 예외에서 에러 코드 추출
- is_retryable: 재시도 가능 여부 판단
- call_with_retry: 재시도 후 도메인 예외(ExternalAPIFailure/APICallError)로 변환
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from core.exceptions import APICallError, ExternalAPIFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NETWORK_ERRORS = (
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


@dataclass
class RetryConfig:
    """재시도 설정

    Attributes:
        max_retries: 최대 재시도 횟수 (0이면 재시도 안함)
        base_delay: 기본 대기 시간 (초)
        max_delay: 최대 대기 시간 (초)
        exponential_base: 지수 백오프 밑수
        jitter: 지터 사용 여부 (대기 시간에 랜덤성 추가)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """재시도 대기 시간 계산

        Exponential backoff with optional jitter.

        Args:
            attempt: 현재 시도 횟수 (0부터 시작)

        Returns:
            대기 시간 (초)
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Full jitter: [0, delay]
            delay = random.uniform(0, delay)

        return delay


# 기본 재시도 설정
DEFAULT_RETRY_CONFIG = RetryConfig()

# 재시도 가능한 AWS 에러 코드
RETRYABLE_ERROR_CODES: set[str] = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RateExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServiceError",
    "RequestTimeout",
    "RequestTimeoutException",
}


def get_error_code(error: Exception) -> str:
    """예외 객체에서 에러 코드 문자열 추출

    ClientError의 경우 response에서 Code를 추출하고,
    그 외에는 예외 클래스명을 반환합니다.
    """
    response = getattr(error, "response", None)
    if response is not None:
        code: str = response.get("Error", {}).get("Code", "Unknown")
        return code
    return error.__class__.__name__


def is_retryable(error: Exception) -> bool:
    """재시도 가능한 에러인지 확인

    RETRYABLE_ERROR_CODES에 포함된 에러 코드이거나
    네트워크/타임아웃 에러인 경우 True를 반환합니다.
    """
    response = getattr(error, "response", None)
    if response is not None:
        error_code = response.get("Error", {}).get("Code", "")
        return error_code in RETRYABLE_ERROR_CODES

    return isinstance(error, _NETWORK_ERRORS)


def call_with_retry(
    func: Callable[..., T],
    *,
    service: str,
    operation: str,
    retry_config: RetryConfig | None = None,
    sleep: Callable[[float], Any] = time.sleep,
    **kwargs: Any,
) -> T:
    """AWS API를 지수 백오프로 재시도하며 호출

    재시도 가능한 에러는 max_retries까지 재시도한 뒤 ExternalAPIFailure로,
    재시도 불가능한 ClientError는 즉시 APICallError로 변환합니다.
    AWS와 무관한 예외는 그대로 전파됩니다.

    Args:
        func: 호출할 boto3 client 메서드
        service: AWS 서비스 이름 (로깅/예외용)
        operation: API 작업 이름 (로깅/예외용)
        retry_config: 재시도 설정 (None이면 DEFAULT_RETRY_CONFIG)
        sleep: 대기 함수 (테스트에서 교체)
        **kwargs: func에 전달할 API 파라미터

    Returns:
        func의 반환값

    Raises:
        ExternalAPIFailure: 일시 오류가 재시도 후에도 계속된 경우
        APICallError: 재시도 대상이 아닌 AWS 오류
    """
    config = retry_config or DEFAULT_RETRY_CONFIG

    for attempt in range(config.max_retries + 1):
        try:
            return func(**kwargs)
        except (ClientError, *_NETWORK_ERRORS) as e:
            if not is_retryable(e):
                raise APICallError.from_client_error(service, operation, e) from e

            if attempt >= config.max_retries:
                response = getattr(e, "response", {}) or {}
                raise ExternalAPIFailure(
                    service=service,
                    operation=operation,
                    error_code=get_error_code(e),
                    error_message=response.get("Error", {}).get("Message", str(e)),
                    cause=e,
                    attempts=attempt + 1,
                ) from e

            delay = config.get_delay(attempt)
            logger.debug(f"{service}.{operation} 시도 {attempt + 1} 실패 ({get_error_code(e)}), {delay:.2f}초 후 재시도...")
            sleep(delay)

    # max_retries < 0 인 경우에만 도달
    raise ExternalAPIFailure(service=service, operation=operation, error_message="시도 횟수 없음", attempts=0)
