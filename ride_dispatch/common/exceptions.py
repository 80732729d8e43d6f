# ride_dispatch/common/exceptions.py
"""
Исключения движка диспетчеризации.

Бизнес-исходы ("водителей нет", "никто не принял") исключениями не являются,
они возвращаются как DispatchResult.
"""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Базовое исключение движка."""

    code: str = "dispatch_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Ответ для внешнего транспорта."""
        return {
            "success": False,
            "message": self.message,
            "code": self.code,
        }


class ValidationError(DispatchError):
    """Некорректные входные данные. Повтор бессмысленен."""
    code = "validation_error"


class ConflictError(DispatchError):
    """Не выполнено условие перехода состояния."""
    code = "conflict"


class NotFoundError(DispatchError):
    """Неизвестная поездка, водитель или предложение."""
    code = "not_found"


class TransientStoreError(DispatchError):
    """Хранилище временно недоступно."""
    code = "store_unavailable"
