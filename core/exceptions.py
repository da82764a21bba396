"""
core/exceptions.py - 통합 예외 계층 구조

스냅샷 오케스트레이터 전체에서 사용되는 예외 클래스들을 정의합니다.
일관된 예외 처리와 에러 메시지를 제공합니다.

예외 계층 구조:
    OrchestratorError (베이스)
    ├── InvalidPolicy (정책 검증)
    ├── PolicyNotFound
    ├── ConfigError (설정 관련)
    ├── ConflictError (동시성/소유권 충돌)
    │   ├── SchedulingConflict
    │   ├── CopyInProgress
    │   ├── RestoreInProgress
    │   └── ClusterOwnershipError
    ├── StateError (상태 머신 위반)
    │   ├── SourceNotReady
    │   ├── WarmupIncomplete
    │   ├── InvalidStateTransition
    │   └── SnapshotFailed
    └── APICallError (AWS API 호출)
        └── ExternalAPIFailure (재시도 소진된 일시 오류)

Usage:
    from core.exceptions import APICallError, SchedulingConflict

    try:
        record = scheduler.trigger_manual("fin-redis-rg", ChangeReason.DEPLOY)
    except SchedulingConflict as e:
        print(e.to_dict())
"""

from typing import Any, Dict, List, Optional

# =============================================================================
# 베이스 예외
# =============================================================================


class OrchestratorError(Exception):
    """스냅샷 오케스트레이터 기본 예외 클래스

    Attributes:
        message: 에러 메시지
        cause: 원인 예외 (체이닝용)
        details: 추가 상세 정보
    """

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """예외 정보를 딕셔너리로 반환"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "cause": str(self.cause) if self.cause else None,
            "details": self.details,
        }


# =============================================================================
# 검증 / 설정 관련 예외
# =============================================================================


class InvalidPolicy(OrchestratorError):
    """백업 정책 검증 실패

    한 정책의 모든 위반 사항을 모아서 한 번에 보고합니다.
    """

    def __init__(self, cluster_id: str, errors: List[str]):
        message = f"정책 검증 실패 [{cluster_id}]: {', '.join(errors)}"
        super().__init__(message)
        self.cluster_id = cluster_id
        self.validation_errors = errors
        self.details.update({"cluster_id": cluster_id, "validation_errors": errors})


class PolicyNotFound(OrchestratorError):
    """등록되지 않은 클러스터의 정책 조회"""

    def __init__(self, cluster_id: str):
        super().__init__(f"정책 없음 [{cluster_id}]")
        self.cluster_id = cluster_id
        self.details["cluster_id"] = cluster_id


class ConfigError(OrchestratorError):
    """설정 관련 예외"""

    def __init__(
        self,
        key: str,
        message: str,
        cause: Optional[Exception] = None,
    ):
        full_message = f"설정 오류 [{key}]: {message}"
        super().__init__(full_message, cause)
        self.config_key = key
        self.details["config_key"] = key


# =============================================================================
# 충돌 관련 예외
# =============================================================================


class ConflictError(OrchestratorError):
    """동시 실행/소유권 충돌 예외"""


class SchedulingConflict(ConflictError):
    """같은 클러스터에 대기 중인 수동 스냅샷이 이미 있음"""

    def __init__(self, cluster_id: str, pending_snapshot_id: str):
        super().__init__(f"스냅샷 예약 충돌 [{cluster_id}]: '{pending_snapshot_id}' 생성 대기 중")
        self.cluster_id = cluster_id
        self.pending_snapshot_id = pending_snapshot_id
        self.details.update({"cluster_id": cluster_id, "pending_snapshot_id": pending_snapshot_id})


class CopyInProgress(ConflictError):
    """같은 (스냅샷, 대상 리전) 복사가 이미 진행 중"""

    def __init__(self, snapshot_id: str, target_region: str):
        super().__init__(f"복사 진행 중 [{snapshot_id} -> {target_region}]")
        self.snapshot_id = snapshot_id
        self.target_region = target_region
        self.details.update({"snapshot_id": snapshot_id, "target_region": target_region})


class RestoreInProgress(ConflictError):
    """대상 클러스터에 활성 복원 요청이 이미 있음"""

    def __init__(self, target_cluster_id: str, state: str):
        super().__init__(f"복원 진행 중 [{target_cluster_id}]: 현재 상태 {state}")
        self.target_cluster_id = target_cluster_id
        self.details.update({"target_cluster_id": target_cluster_id, "state": state})


class ClusterOwnershipError(ConflictError):
    """다른 오너가 클러스터 책임을 보유 중"""

    def __init__(self, cluster_id: str, owner: str, requested_by: str):
        super().__init__(f"클러스터 소유권 충돌 [{cluster_id}]: '{owner}' 보유 중 (요청: '{requested_by}')")
        self.cluster_id = cluster_id
        self.owner = owner
        self.details.update({"cluster_id": cluster_id, "owner": owner, "requested_by": requested_by})


# =============================================================================
# 상태 머신 관련 예외
# =============================================================================


class StateError(OrchestratorError):
    """상태 머신 규칙 위반"""


class SourceNotReady(StateError):
    """복사 원본 스냅샷이 available 상태가 아님"""

    def __init__(self, snapshot_id: str, status: str):
        super().__init__(f"원본 스냅샷 준비 안 됨 [{snapshot_id}]: 상태 {status}")
        self.snapshot_id = snapshot_id
        self.details.update({"snapshot_id": snapshot_id, "status": status})


class WarmupIncomplete(StateError):
    """워밍 검증 확인 없이 컷오버 시도"""

    def __init__(self, target_cluster_id: str, state: str):
        super().__init__(f"워밍 미완료 [{target_cluster_id}]: 상태 {state}, 섀도 읽기 검증 확인 필요")
        self.target_cluster_id = target_cluster_id
        self.details.update({"target_cluster_id": target_cluster_id, "state": state})


class InvalidStateTransition(StateError):
    """허용되지 않은 상태 전이"""

    def __init__(self, subject: str, current: str, requested: str):
        super().__init__(f"잘못된 상태 전이 [{subject}]: {current} -> {requested}")
        self.subject = subject
        self.current = current
        self.requested = requested
        self.details.update({"subject": subject, "current": current, "requested": requested})


class SnapshotFailed(StateError):
    """스냅샷이 failed로 종료됨 (자동 재시도 없음)"""

    def __init__(self, snapshot_id: str, cluster_id: str, reason: Optional[str] = None):
        message = f"스냅샷 실패 [{cluster_id}/{snapshot_id}]"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.snapshot_id = snapshot_id
        self.cluster_id = cluster_id
        self.reason = reason
        self.details.update({"snapshot_id": snapshot_id, "cluster_id": cluster_id, "reason": reason})


# =============================================================================
# AWS API 관련 예외
# =============================================================================


class APICallError(OrchestratorError):
    """AWS API 호출 관련 예외

    boto3/botocore의 ClientError를 래핑하여 일관된 예외 처리를 제공합니다.
    재시도 대상이 아닌 에러 코드는 이 예외로 즉시 전달됩니다.
    """

    def __init__(
        self,
        service: str,
        operation: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        message = f"{service}.{operation}"
        if error_code:
            message = f"{message} 실패 ({error_code})"
        if error_message:
            message = f"{message}: {error_message}"

        super().__init__(message, cause=cause)
        self.service = service
        self.operation = operation
        self.error_code = error_code
        self.error_message = error_message
        self.details.update(
            {
                "service": service,
                "operation": operation,
                "error_code": error_code,
            }
        )

    @classmethod
    def from_client_error(
        cls,
        service: str,
        operation: str,
        client_error: Exception,
    ) -> "APICallError":
        """botocore.exceptions.ClientError로부터 생성

        Args:
            service: AWS 서비스 이름
            operation: API 작업 이름
            client_error: ClientError 예외

        Returns:
            APICallError (또는 하위 클래스) 인스턴스
        """
        error_code = None
        error_message = None

        if hasattr(client_error, "response"):
            error_info = client_error.response.get("Error", {})
            error_code = error_info.get("Code")
            error_message = error_info.get("Message")

        return cls(
            service=service,
            operation=operation,
            error_code=error_code,
            error_message=error_message,
            cause=client_error,
        )


class ExternalAPIFailure(APICallError):
    """일시적 AWS API 오류 (재시도 횟수 소진 후 전달)

    Attributes:
        attempts: 실제 시도 횟수
    """

    def __init__(
        self,
        service: str,
        operation: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        cause: Optional[Exception] = None,
        attempts: int = 1,
    ):
        super().__init__(service, operation, error_code, error_message, cause)
        self.attempts = attempts
        self.details["attempts"] = attempts


# =============================================================================
# 예외 유틸리티 함수
# =============================================================================

THROTTLING_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RateExceeded",
}

ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedAccess",
    "UnauthorizedOperation",
}

NOT_FOUND_CODES = {
    "ResourceNotFoundException",
    "NotFoundException",
    "SnapshotNotFoundFault",
    "ReplicationGroupNotFoundFault",
    "CacheClusterNotFound",
    "CacheParameterGroupNotFound",
}


def _error_code_of(error: Exception) -> str:
    if isinstance(error, APICallError):
        return error.error_code or ""
    if hasattr(error, "response"):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def is_access_denied(error: Exception) -> bool:
    """액세스 거부 오류인지 확인

    Args:
        error: 확인할 예외

    Returns:
        액세스 거부 오류이면 True
    """
    return _error_code_of(error) in ACCESS_DENIED_CODES


def is_throttling(error: Exception) -> bool:
    """스로틀링 오류인지 확인"""
    return _error_code_of(error) in THROTTLING_CODES


def is_not_found(error: Exception) -> bool:
    """리소스를 찾을 수 없는 오류인지 확인"""
    return _error_code_of(error) in NOT_FOUND_CODES


def format_error_for_user(error: Exception) -> str:
    """사용자에게 표시할 에러 메시지 포맷팅

    Args:
        error: 예외

    Returns:
        사용자 친화적인 에러 메시지
    """
    if isinstance(error, ExternalAPIFailure):
        return f"{error} ({error.attempts}회 시도 후 중단)"

    if isinstance(error, OrchestratorError):
        return str(error)

    if hasattr(error, "response"):
        error_info = error.response.get("Error", {})
        code = error_info.get("Code", "UnknownError")
        message = error_info.get("Message", str(error))

        friendly_messages = {
            "AccessDenied": "권한이 없습니다. IAM 정책을 확인하세요.",
            "ExpiredToken": "인증 토큰이 만료되었습니다. 다시 로그인하세요.",
            "InvalidClientTokenId": "잘못된 자격 증명입니다.",
            "Throttling": "요청이 너무 많습니다. 잠시 후 다시 시도하세요.",
        }

        return friendly_messages.get(code, f"{code}: {message}")

    return str(error)
