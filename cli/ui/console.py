"""
cli/ui/console.py - Rich 콘솔 유틸리티

일관된 콘솔 출력과 로깅 설정을 위한 함수들
"""

from __future__ import annotations

import logging
import platform

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

# botocore 노이즈 로그 제한
logging.getLogger("botocore.credentials").setLevel(logging.WARNING)
logging.getLogger("botocore.loaders").setLevel(logging.WARNING)
logging.getLogger("botocore.session").setLevel(logging.WARNING)
logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)


def get_console() -> Console:
    """Rich Console 인스턴스를 생성하고 반환합니다."""
    is_windows = platform.system().lower() == "windows"

    return Console(
        color_system="auto",
        highlight=True,
        soft_wrap=True,
        markup=True,
        emoji=not is_windows,
    )


console = get_console()


def setup_logging(verbosity: int = 0) -> None:
    """루트 로거에 Rich 핸들러 설정

    Args:
        verbosity: 0=WARNING, 1=INFO, 2 이상=DEBUG
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbosity >= 2)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


# =============================================================================
# 표준 출력 스타일
# =============================================================================

SYMBOL_SUCCESS = "✓"
SYMBOL_ERROR = "✗"
SYMBOL_WARNING = "!"
SYMBOL_INFO = "•"

# 상태별 색상
STATUS_STYLES = {
    "available": "green",
    "complete": "green",
    "pending": "yellow",
    "restoring": "yellow",
    "warming": "cyan",
    "cutover": "cyan",
    "failed": "red",
    "aborted": "red",
}


def styled_status(status: str) -> str:
    color = STATUS_STYLES.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def print_success(message: str) -> None:
    """성공 메시지 출력 (초록색 체크마크)"""
    console.print(f"[green]{SYMBOL_SUCCESS} {escape(message)}[/green]")


def print_error(message: str) -> None:
    """에러 메시지 출력 (빨간색 X)"""
    console.print(f"[red]{SYMBOL_ERROR} {escape(message)}[/red]")


def print_warning(message: str) -> None:
    console.print(f"[yellow]{SYMBOL_WARNING} {escape(message)}[/yellow]")


def print_info(message: str) -> None:
    console.print(f"[blue]{SYMBOL_INFO} {escape(message)}[/blue]")


def print_table(
    title: str,
    columns: list[str],
    rows: list[list],
) -> None:
    """테이블 형식으로 데이터를 출력합니다.

    Args:
        title: 테이블 제목
        columns: 컬럼 헤더 리스트
        rows: 행 데이터 리스트
    """
    table = Table(title=title, show_header=True, header_style="bold magenta")

    for column in columns:
        table.add_column(column)

    for row in rows:
        table.add_row(*[str(cell) for cell in row])

    console.print(table)
