"""
cli/app.py - 메인 CLI 엔트리포인트

Click 기반의 스냅샷 오케스트레이터 CLI입니다.

명령어 구조:
    eso --version
    eso policy validate FILE            # 정책 파일 검증 (AWS 호출 없음)
    eso policy apply [--file FILE]      # 자동 스냅샷 설정 적용
    eso policy drift [--file FILE]      # 정책 드리프트 확인
    eso snapshot create CLUSTER         # 변경 전 스냅샷 (+완료 후 DR 복사)
    eso snapshot list CLUSTER           # 스냅샷 이력
    eso snapshot copy SNAPSHOT --to R   # 리전 간 복사
    eso snapshot delete SNAPSHOT        # 스냅샷 삭제
    eso restore run TARGET ...          # 블루-그린 복원 (한 프로세스에서 끝까지)
    eso restore decommission OLD ...    # 컷오버 후 기존 클러스터 폐기

공통 옵션:
    --config PATH   설정 파일 (기본: ESO_CONFIG, ./eso.yaml)
    -r, --region    리전 덮어쓰기
    -p, --profile   AWS 프로파일 덮어쓰기
    -v / -vv        INFO / DEBUG 로그

종료 코드:
    0: 성공
    1: OrchestratorError (메시지는 format_error_for_user로 출력)
"""

from __future__ import annotations

import functools
import logging
import sys
import time
from collections.abc import Callable
from typing import Any

import click
from click import Context

from cli.ui import (
    console,
    print_error,
    print_info,
    print_success,
    print_table,
    print_warning,
    setup_logging,
    styled_status,
)
from core.config import OrchestratorSettings, get_version, load_settings
from core.exceptions import OrchestratorError, format_error_for_user
from orchestrator import ChangeReason, RestoreState, SnapshotOrchestrator, SnapshotRecord, load_policies

logger = logging.getLogger(__name__)

VERSION = get_version()

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}

DEFAULT_WAIT_TIMEOUT = 3600.0


# =============================================================================
# 공통 헬퍼
# =============================================================================


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """OrchestratorError/TimeoutError를 메시지 + 종료 코드 1로 변환"""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except OrchestratorError as e:
            logger.debug("명령 실패: %r", e.to_dict())
            print_error(format_error_for_user(e))
            sys.exit(1)
        except TimeoutError as e:
            print_error(str(e))
            sys.exit(1)

    return wrapper


def get_settings(ctx: Context) -> OrchestratorSettings:
    """컨텍스트에 캐시된 설정 (처음 호출 시 로드 + CLI 옵션 적용)"""
    obj = ctx.find_root().obj
    if obj.get("settings") is None:
        settings = load_settings(obj.get("config_path"))
        if obj.get("region"):
            settings.region = obj["region"]
        if obj.get("profile"):
            settings.profile = obj["profile"]
        obj["settings"] = settings
    return obj["settings"]


def get_orchestrator(ctx: Context) -> SnapshotOrchestrator:
    """컨텍스트의 오케스트레이터 (주입된 것이 없으면 설정으로 생성, 명령 종료 시 close)"""
    root = ctx.find_root()
    if root.obj.get("orchestrator") is None:
        orchestrator = SnapshotOrchestrator.from_settings(get_settings(ctx))
        root.obj["orchestrator"] = orchestrator
        root.call_on_close(orchestrator.close)
    return root.obj["orchestrator"]


def _format_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _record_row(record: SnapshotRecord) -> list[str]:
    return [
        record.snapshot_id,
        record.trigger.value,
        styled_status(record.status.value),
        record.region,
        _format_time(record.created_at),
        record.size or "-",
    ]


RECORD_COLUMNS = ["Snapshot", "Trigger", "Status", "Region", "Created (UTC)", "Size"]


# =============================================================================
# 루트 그룹
# =============================================================================


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(version=VERSION, prog_name="eso")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="설정 파일 경로")
@click.option("-r", "--region", default=None, help="리전 (설정 파일 값 덮어쓰기)")
@click.option("-p", "--profile", default=None, help="AWS 프로파일")
@click.option("-v", "--verbose", count=True, help="로그 상세도 (-v: INFO, -vv: DEBUG)")
@click.pass_context
def cli(ctx: Context, config_path: str | None, region: str | None, profile: str | None, verbose: int) -> None:
    """ElastiCache(Redis) 스냅샷 수명 주기 오케스트레이터"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("config_path", config_path)
    ctx.obj.setdefault("region", region)
    ctx.obj.setdefault("profile", profile)


# =============================================================================
# policy
# =============================================================================


@cli.group()
def policy() -> None:
    """백업 정책 검증/적용/드리프트 확인"""


@policy.command("validate")
@click.argument("policy_file", type=click.Path(dir_okay=False))
@handle_errors
def policy_validate(policy_file: str) -> None:
    """정책 파일 검증 (AWS 호출 없음)"""
    store = load_policies(policy_file)

    rows = [
        [
            p.cluster_id,
            p.tier.value,
            f"{p.retention_days}일",
            p.snapshot_window,
            f"{p.reserved_memory_percent}%",
            p.cross_region_target or "-",
        ]
        for p in store.all()
    ]
    print_table("Backup Policies", ["Cluster", "Tier", "Retention", "Window", "Reserved Mem", "DR Region"], rows)
    print_success(f"정책 {len(store)}개 검증 완료")


def _load_extra_policies(orchestrator: SnapshotOrchestrator, policy_file: str | None) -> None:
    if policy_file:
        load_policies(policy_file, orchestrator.policies)
    if not len(orchestrator.policies):
        print_warning("적용할 정책이 없습니다 (설정 파일의 policies 또는 --file 확인)")


@policy.command("apply")
@click.option("-f", "--file", "policy_file", type=click.Path(dir_okay=False), default=None, help="추가 정책 파일")
@click.pass_context
@handle_errors
def policy_apply(ctx: Context, policy_file: str | None) -> None:
    """자동 스냅샷 보존 기간/시간대를 정책에 맞춤"""
    orchestrator = get_orchestrator(ctx)
    _load_extra_policies(orchestrator, policy_file)

    results = orchestrator.apply_policies()
    rows = [[cluster_id, "[yellow]변경됨[/yellow]" if changed else "동일"] for cluster_id, changed in results.items()]
    if rows:
        print_table("Automatic Snapshot Settings", ["Cluster", "Result"], rows)
    print_success(f"{sum(results.values())}개 클러스터 설정 변경")


@policy.command("drift")
@click.option("-f", "--file", "policy_file", type=click.Path(dir_okay=False), default=None, help="추가 정책 파일")
@click.option("--strict", is_flag=True, help="드리프트가 있으면 종료 코드 1")
@click.pass_context
@handle_errors
def policy_drift(ctx: Context, policy_file: str | None, strict: bool) -> None:
    """정책과 실제 설정 비교 (보고만 하고 수정하지 않음)"""
    orchestrator = get_orchestrator(ctx)
    _load_extra_policies(orchestrator, policy_file)

    drift = orchestrator.check_drift()
    orchestrator.alerts.flush(timeout=10)
    if not drift:
        print_success("드리프트 없음")
        return

    rows = [
        [cluster_id, item.field, str(item.expected), str(item.actual)]
        for cluster_id, items in drift.items()
        for item in items
    ]
    print_table("Policy Drift", ["Cluster", "Field", "Policy", "Actual"], rows)
    print_warning(f"{len(drift)}개 클러스터에서 드리프트 발견")
    if strict:
        sys.exit(1)


# =============================================================================
# snapshot
# =============================================================================


@cli.group()
def snapshot() -> None:
    """수동 스냅샷 생성/조회/복사/삭제"""


@snapshot.command("create")
@click.argument("cluster_id")
@click.option(
    "--reason",
    type=click.Choice([r.value for r in ChangeReason]),
    default=ChangeReason.DEPLOY.value,
    show_default=True,
    help="스냅샷 사유 (ad_hoc 외에는 pre-change)",
)
@click.option("--wait/--no-wait", default=True, show_default=True, help="종료 상태까지 대기")
@click.option("--timeout", type=float, default=DEFAULT_WAIT_TIMEOUT, show_default=True, help="대기 시간 (초)")
@click.pass_context
@handle_errors
def snapshot_create(ctx: Context, cluster_id: str, reason: str, wait: bool, timeout: float) -> None:
    """변경 이벤트 전 스냅샷 생성

    --wait이면 available까지 기다린 뒤, 정책에 DR 리전이 있으면 복사를 시작합니다.
    """
    orchestrator = get_orchestrator(ctx)

    with console.status(f"{cluster_id} 스냅샷 생성 중..."):
        record = orchestrator.pre_change_snapshot(cluster_id, ChangeReason(reason), wait=wait, timeout=timeout)

    print_table("Snapshot", RECORD_COLUMNS, [_record_row(record)])
    if not wait:
        print_info(f"생성 요청 완료: {record.snapshot_id} (pending)")
        return

    print_success(f"스냅샷 완료: {record.snapshot_id}")
    for source_id, region in orchestrator.copier.in_flight():
        if source_id == record.snapshot_id:
            print_info(f"DR 복사 시작: {source_id} -> {region}")
    orchestrator.alerts.flush(timeout=10)


@snapshot.command("list")
@click.argument("cluster_id")
@click.pass_context
@handle_errors
def snapshot_list(ctx: Context, cluster_id: str) -> None:
    """클러스터 스냅샷 이력 (자동 스냅샷 포함)"""
    orchestrator = get_orchestrator(ctx)
    orchestrator.tracker.import_existing(cluster_id)

    records = orchestrator.tracker.history(cluster_id)
    if not records:
        print_warning(f"스냅샷 없음: {cluster_id}")
        return
    print_table(f"Snapshots: {cluster_id}", RECORD_COLUMNS, [_record_row(r) for r in records])


@snapshot.command("copy")
@click.argument("snapshot_id")
@click.option("--to", "target_region", required=True, help="대상 리전")
@click.option("--kms-key-id", default=None, help="복사본 암호화 KMS 키")
@click.option("--wait/--no-wait", default=False, show_default=True, help="복사 완료까지 대기")
@click.option("--timeout", type=float, default=DEFAULT_WAIT_TIMEOUT, show_default=True, help="대기 시간 (초)")
@click.pass_context
@handle_errors
def snapshot_copy(
    ctx: Context,
    snapshot_id: str,
    target_region: str,
    kms_key_id: str | None,
    wait: bool,
    timeout: float,
) -> None:
    """available 스냅샷을 대상 리전으로 복사"""
    orchestrator = get_orchestrator(ctx)
    orchestrator.adopt_snapshot(snapshot_id)

    record = orchestrator.copier.copy(snapshot_id, target_region, kms_key_id)
    print_info(f"복사 시작: {snapshot_id} -> {target_region} (s3://{record.target_bucket}/{record.snapshot_id})")
    if not wait:
        return

    orchestrator.start()
    with console.status(f"{record.snapshot_id} 복사 대기 중..."):
        final = orchestrator.tracker.wait_for(record.snapshot_id, timeout)
    print_success(f"복사 완료: {final.snapshot_id}")


@snapshot.command("delete")
@click.argument("snapshot_id")
@click.option("-y", "--yes", is_flag=True, help="확인 없이 삭제")
@click.pass_context
@handle_errors
def snapshot_delete(ctx: Context, snapshot_id: str, yes: bool) -> None:
    """스냅샷 삭제"""
    if not yes and not click.confirm(f"{snapshot_id}을(를) 삭제할까요?", default=False):
        print_warning("취소됨")
        return

    orchestrator = get_orchestrator(ctx)
    orchestrator.gateway.delete_snapshot(snapshot_id)
    print_success(f"삭제 요청 완료: {snapshot_id}")


# =============================================================================
# restore
# =============================================================================


@cli.group()
def restore() -> None:
    """블루-그린 복원 및 기존 클러스터 폐기"""


def _wait_until_warming(
    orchestrator: SnapshotOrchestrator,
    target: str,
    poll_interval: float,
    timeout: float,
) -> RestoreState:
    deadline = time.monotonic() + timeout
    with console.status(f"{target} 복원 중..."):
        while True:
            state = orchestrator.restore.check_restore(target)
            if state is not RestoreState.RESTORING:
                return state
            if time.monotonic() >= deadline:
                return state
            time.sleep(poll_interval)


@restore.command("run")
@click.argument("target_cluster_id")
@click.option("--snapshot", "snapshot_id", required=True, help="원본 스냅샷")
@click.option("--node-type", required=True, help="노드 타입 (예: cache.r6g.large)")
@click.option("--multi-az/--single-az", default=True, show_default=True)
@click.option("--source-cluster", default=None, help="설정(파라미터/보안 그룹)을 복사할 기존 클러스터")
@click.option("--validated-by", default=None, help="섀도 읽기 검증자 (기본: 설정의 owner)")
@click.option("--poll-interval", type=float, default=30.0, show_default=True, help="복원 상태 확인 간격 (초)")
@click.option("--timeout", type=float, default=DEFAULT_WAIT_TIMEOUT, show_default=True, help="복원 대기 시간 (초)")
@click.option("-y", "--yes", is_flag=True, help="컷오버 확인 생략")
@click.pass_context
@handle_errors
def restore_run(
    ctx: Context,
    target_cluster_id: str,
    snapshot_id: str,
    node_type: str,
    multi_az: bool,
    source_cluster: str | None,
    validated_by: str | None,
    poll_interval: float,
    timeout: float,
    yes: bool,
) -> None:
    """스냅샷에서 새 클러스터를 만들고 검증 후 트래픽 전환

    복원 상태는 프로세스 안에만 있으므로 요청부터 컷오버까지 이 명령에서 끝냅니다.
    """
    orchestrator = get_orchestrator(ctx)
    target = target_cluster_id

    request = orchestrator.restore.request(
        target, snapshot_id, node_type, multi_az=multi_az, source_cluster_id=source_cluster
    )
    orchestrator.restore.start_restore(target)
    print_info(f"복원 시작: {target} <- {snapshot_id}")

    state = _wait_until_warming(orchestrator, target, poll_interval, timeout)
    if state is RestoreState.ABORTED:
        orchestrator.alerts.flush(timeout=10)
        print_error(f"복원 중단: {target} ({request.abort_reason})")
        sys.exit(1)
    if state is RestoreState.RESTORING:
        orchestrator.restore.abort(target, f"복원 대기 시간 초과 ({timeout:.0f}초)")
        orchestrator.alerts.flush(timeout=10)
        print_error(f"복원 대기 시간 초과: {target}")
        sys.exit(1)

    print_info(f"{target} 워밍 단계: 섀도 읽기로 데이터 검증 후 컷오버하세요")
    if not yes and not click.confirm("섀도 읽기 검증이 끝났고 트래픽을 전환할까요?", default=False):
        orchestrator.restore.abort(target, "운영자가 컷오버를 거부함")
        orchestrator.alerts.flush(timeout=10)
        print_warning(f"복원 중단: {target} (복제 그룹은 남아 있음)")
        sys.exit(1)

    orchestrator.restore.confirm_warmup(target, validated_by or get_settings(ctx).owner)
    orchestrator.restore.cutover(target)
    print_success(f"컷오버 완료: {request.target_cluster_id} ({request.state.value})")


@restore.command("decommission")
@click.argument("old_cluster_id")
@click.option("--replaced-by", required=True, help="컷오버가 끝난 대체 클러스터")
@click.option("--final-snapshot/--no-final-snapshot", default=True, show_default=True, help="삭제 전 최종 스냅샷")
@click.option("-y", "--yes", is_flag=True, help="확인 없이 삭제")
@click.pass_context
@handle_errors
def restore_decommission(ctx: Context, old_cluster_id: str, replaced_by: str, final_snapshot: bool, yes: bool) -> None:
    """컷오버가 끝난 뒤 기존 클러스터 삭제"""
    if not yes and not click.confirm(f"{old_cluster_id}을(를) 삭제할까요? (대체: {replaced_by})", default=False):
        print_warning("취소됨")
        return

    orchestrator = get_orchestrator(ctx)
    final_name = orchestrator.restore.decommission(old_cluster_id, replaced_by, final_snapshot=final_snapshot)
    print_success(f"삭제 요청 완료: {old_cluster_id}" + (f" (최종 스냅샷: {final_name})" if final_name else ""))


if __name__ == "__main__":
    cli()
