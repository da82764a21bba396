# cli/ui - 콘솔 출력 컴포넌트 (rich)
"""
콘솔 출력 모듈
"""

from .console import (
    SYMBOL_ERROR,
    SYMBOL_INFO,
    SYMBOL_SUCCESS,
    SYMBOL_WARNING,
    console,
    get_console,
    print_error,
    print_info,
    print_success,
    print_table,
    print_warning,
    setup_logging,
    styled_status,
)

__all__ = [
    "SYMBOL_ERROR",
    "SYMBOL_INFO",
    "SYMBOL_SUCCESS",
    "SYMBOL_WARNING",
    "console",
    "get_console",
    "print_error",
    "print_info",
    "print_success",
    "print_table",
    "print_warning",
    "setup_logging",
    "styled_status",
]
