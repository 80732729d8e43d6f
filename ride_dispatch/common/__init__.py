"""
Общие утилиты, константы, исключения и логгер.
"""

from ride_dispatch.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.exceptions import (
    DispatchError,
    ValidationError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
)

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "DispatchError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "TransientStoreError",
]
