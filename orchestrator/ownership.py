"""
orchestrator/ownership.py - 클러스터 단일 오너 관리

한 클러스터에 대해 스케줄러/트래커 책임을 가진 오너는 하나뿐이어야
중복 스냅샷 트리거를 막을 수 있습니다. 같은 오너의 재획득은 허용됩니다.
"""

from __future__ import annotations

import logging
import threading

from core.exceptions import ClusterOwnershipError

logger = logging.getLogger(__name__)


class ClusterOwnership:
    """클러스터 ID -> 오너 레지스트리"""

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, cluster_id: str, owner: str) -> None:
        """소유권 획득

        Raises:
            ClusterOwnershipError: 다른 오너가 이미 보유 중인 경우
        """
        with self._lock:
            current = self._owners.get(cluster_id)
            if current is not None and current != owner:
                raise ClusterOwnershipError(cluster_id, current, owner)
            if current is None:
                logger.info("클러스터 소유권 획득: %s -> %s", cluster_id, owner)
            self._owners[cluster_id] = owner

    def release(self, cluster_id: str, owner: str) -> bool:
        """소유권 해제 (보유자가 아니면 False)"""
        with self._lock:
            if self._owners.get(cluster_id) != owner:
                return False
            del self._owners[cluster_id]
            logger.info("클러스터 소유권 해제: %s (%s)", cluster_id, owner)
            return True

    def owner_of(self, cluster_id: str) -> str | None:
        with self._lock:
            return self._owners.get(cluster_id)
