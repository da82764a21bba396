# core/__init__.py
"""
core - 스냅샷 오케스트레이터 공용 인프라

오케스트레이터와 CLI가 함께 쓰는 AWS 호출/설정/예외 계층입니다.

아키텍처:
    core/
    ├── aws/            # boto3 client 생성, 재시도(백오프 + 지터)
    ├── config.py       # YAML 설정 + ESO_* 환경 변수
    └── exceptions.py   # 통합 예외 계층

Usage:
    # 설정 사용
    from core.config import load_settings
    settings = load_settings("eso.yaml")

    # 재시도 호출
    from core.aws import call_with_retry, get_client
    client = get_client(session, "elasticache", region_name=settings.region)
    call_with_retry(client.describe_snapshots, service="elasticache", operation="describe_snapshots")

    # 예외 처리
    from core.exceptions import APICallError, is_not_found
    try:
        ...
    except APICallError as e:
        if is_not_found(e.cause):
            ...
"""

from core import aws, config, exceptions

__all__: list[str] = [
    "aws",
    "config",
    "exceptions",
]
