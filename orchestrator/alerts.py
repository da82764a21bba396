"""
orchestrator/alerts.py - 알림 디스패처

이벤트를 하나 이상의 외부 싱크(SNS, EventBridge, 채팅/티켓 웹훅, 로그)로
fire-and-forget 방식으로 전달합니다. 싱크 전송 실패는 로그만 남기고
호출한 컴포넌트에 전파하지 않습니다. 백업 경로가 알림 때문에 막히면 안 됩니다.

Example:
    dispatcher = AlertDispatcher([LogSink(), WebhookSink("https://hooks.slack.com/...")])
    dispatcher.attach(bus)
    ...
    dispatcher.close()
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any

import requests

from core.aws import call_with_retry, get_client
from core.exceptions import ConfigError

from .events import ALERT_EVENT_TYPES, Event, EventBus

if TYPE_CHECKING:
    import boto3

logger = logging.getLogger(__name__)

EVENT_SOURCE = "eso.elasticache.snapshot"


# =============================================================================
# 싱크
# =============================================================================


class AlertSink:
    """알림 싱크 베이스 클래스"""

    name = "sink"

    def send(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class LogSink(AlertSink):
    """로그로만 남기는 싱크 (싱크 미설정 시 기본값)"""

    name = "log"

    def __init__(self, level: int = logging.WARNING) -> None:
        self.level = level

    def send(self, payload: dict[str, Any]) -> None:
        logger.log(
            self.level,
            "[ALERT] %s %s/%s status=%s",
            payload["event"],
            payload["cluster_id"],
            payload.get("snapshot_id") or "-",
            payload.get("status"),
        )


class SNSSink(AlertSink):
    """SNS 토픽 publish"""

    name = "sns"

    def __init__(self, topic_arn: str, session: boto3.Session | None = None, client: Any = None) -> None:
        self.topic_arn = topic_arn
        region = topic_arn.split(":")[3] if topic_arn.count(":") >= 5 else None
        self._client = client or get_client(session, "sns", region_name=region)

    def send(self, payload: dict[str, Any]) -> None:
        subject = f"[{payload['event']}] {payload['cluster_id']}"[:100]
        call_with_retry(
            self._client.publish,
            service="sns",
            operation="publish",
            TopicArn=self.topic_arn,
            Subject=subject,
            Message=json.dumps(payload, ensure_ascii=False, default=str),
        )


class EventBridgeSink(AlertSink):
    """EventBridge put_events"""

    name = "eventbridge"

    def __init__(
        self,
        event_bus_name: str = "default",
        session: boto3.Session | None = None,
        region: str | None = None,
        client: Any = None,
    ) -> None:
        self.event_bus_name = event_bus_name
        self._client = client or get_client(session, "events", region_name=region)

    def send(self, payload: dict[str, Any]) -> None:
        response = call_with_retry(
            self._client.put_events,
            service="events",
            operation="put_events",
            Entries=[
                {
                    "Source": EVENT_SOURCE,
                    "DetailType": payload["event"],
                    "Detail": json.dumps(payload, ensure_ascii=False, default=str),
                    "EventBusName": self.event_bus_name,
                }
            ],
        )
        if response.get("FailedEntryCount", 0):
            raise RuntimeError(f"put_events 실패: {response.get('Entries')}")


class WebhookSink(AlertSink):
    """채팅/티켓 시스템 웹훅 POST

    Slack 호환 "text" 필드와 원본 페이로드를 함께 보냅니다.
    """

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, headers: dict[str, str] | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}

    def send(self, payload: dict[str, Any]) -> None:
        text = f"[{payload['event']}] {payload['cluster_id']} {payload.get('snapshot_id') or ''} ({payload.get('status')})"
        response = requests.post(
            self.url,
            json={"text": text.strip(), "payload": payload},
            headers=self.headers,
            timeout=self.timeout,
        )
        response.raise_for_status()


def build_sinks(
    configs: list[dict[str, Any]],
    session: boto3.Session | None = None,
    region: str | None = None,
) -> list[AlertSink]:
    """설정 목록에서 싱크 생성 (빈 목록이면 LogSink 하나)

    Raises:
        ConfigError: 필수 키 누락 또는 알 수 없는 type
    """
    sinks: list[AlertSink] = []
    for i, config in enumerate(configs):
        kind = config.get("type")
        try:
            if kind == "log":
                sinks.append(LogSink())
            elif kind == "sns":
                sinks.append(SNSSink(config["topic_arn"], session=session))
            elif kind == "eventbridge":
                sinks.append(
                    EventBridgeSink(config.get("event_bus_name", "default"), session=session, region=region)
                )
            elif kind == "webhook":
                sinks.append(
                    WebhookSink(config["url"], timeout=float(config.get("timeout", 5.0)), headers=config.get("headers"))
                )
            else:
                raise ConfigError(f"sinks[{i}].type", f"알 수 없는 싱크: {kind!r}")
        except KeyError as e:
            raise ConfigError(f"sinks[{i}].{e.args[0]}", "필수 키가 없습니다", cause=e) from e

    return sinks or [LogSink()]


# =============================================================================
# 디스패처
# =============================================================================


class AlertDispatcher:
    """이벤트 -> 싱크 비동기 전달

    Args:
        sinks: 전달 대상 싱크 목록
        max_workers: 전송 스레드 수
    """

    def __init__(self, sinks: list[AlertSink], max_workers: int = 4) -> None:
        self.sinks = list(sinks)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert")
        self._futures: set[Future] = set()
        self._lock = threading.RLock()
        self._closed = False

    def attach(self, bus: EventBus, forward_status: bool = False) -> None:
        """버스 구독 (forward_status=True면 모든 이벤트 전달)"""
        bus.subscribe(self.publish, types=None if forward_status else ALERT_EVENT_TYPES)

    def publish(self, event: Event) -> None:
        """모든 싱크로 전송 예약 (즉시 반환)"""
        payload = event.to_payload()
        with self._lock:
            if self._closed:
                logger.warning("디스패처 종료 후 이벤트 무시: %s", event.type.value)
                return
            for sink in self.sinks:
                future = self._executor.submit(self._deliver, sink, payload)
                self._futures.add(future)
                future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    @staticmethod
    def _deliver(sink: AlertSink, payload: dict[str, Any]) -> bool:
        try:
            sink.send(payload)
            return True
        except Exception as e:
            logger.error("알림 전송 실패 [%s] %s: %s", sink.name, payload.get("event"), e)
            return False

    def flush(self, timeout: float | None = None) -> bool:
        """예약된 전송이 끝날 때까지 대기 (모두 끝났으면 True)"""
        with self._lock:
            pending = list(self._futures)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: float | None = 10.0) -> None:
        self.flush(timeout)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False)
