# ride_dispatch/common/logger.py
"""
Модуль структурированного логирования.
Поддерживает JSON и цветной текстовый формат, ротацию файлов по размеру
и отдельный файл для ошибок.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from ride_dispatch.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "ride_dispatch"

# Общие файловые хендлеры (один на процесс)
_FILE_HANDLER: logging.Handler | None = None
_ERROR_HANDLER: logging.Handler | None = None

_LOGGING_INITIALIZED: bool = False

_loggers: dict[str, logging.Logger] = {}


# =============================================================================
# ФОРМАТТЕРЫ
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Форматтер для JSON логов."""

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога в JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Цветной форматтер для консоли."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога с цветом."""
        color = self.COLORS.get(record.levelname, self.GRAY)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        caller = ""
        extra_data = getattr(record, "extra_data", None) or {}
        if extra_data.get("caller_function"):
            caller = (
                f" {self.GRAY}[{extra_data.get('caller_module')}."
                f"{extra_data.get('caller_function')}() "
                f"{extra_data.get('caller_file')}:{extra_data.get('caller_line')}]{self.RESET}"
            )

        message = f"{timestamp} {color}[{record.levelname}]{self.RESET}{caller} {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class SizeRotatingFileHandler(RotatingFileHandler):
    """
    Хендлер с ротацией по размеру.
    Пишет в фиксированный файл, при переполнении переименовывает его
    в архив с меткой времени и начинает новый.
    """

    def __init__(self, log_dir: str, max_bytes: int, file_stem: str, encoding: str = "utf-8") -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.file_stem = file_stem

        super().__init__(
            filename=str(self.log_dir / f"{file_stem}.log"),
            maxBytes=max_bytes,
            backupCount=0,
            encoding=encoding,
        )

    def doRollover(self) -> None:
        """Переименовывает текущий файл в архивный и открывает новый."""
        if self.stream:
            self.stream.close()
            self.stream = None

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        archive = self.log_dir / f"{self.file_stem}_{timestamp}.log"

        if os.path.exists(self.baseFilename):
            try:
                os.rename(self.baseFilename, archive)
            except OSError:
                # Файл занят, продолжаем писать в старый
                pass

        self.stream = self._open()


# =============================================================================
# НАСТРОЙКА
# =============================================================================

@dataclass
class _LogConfig:
    """Снимок настроек логирования."""
    level: str = "DEBUG"
    fmt: str = "colored"
    to_file: bool = False
    file_path: str = "logs/app.log"
    max_bytes: int = 10485760


def _read_log_config() -> _LogConfig:
    """
    Читает настройки логирования из конфигурации.
    При любой проблеме с конфигом возвращает значения по умолчанию.
    """
    try:
        from ride_dispatch.config import settings
        section = settings.logging
        config = _LogConfig(
            level=section.LOG_LEVEL,
            fmt=section.LOG_FORMAT,
            to_file=section.LOG_TO_FILE,
            file_path=section.LOG_FILE_PATH,
            max_bytes=section.LOG_MAX_BYTES,
        )
    except Exception:
        return _LogConfig()

    # Защита от MagicMock в тестах
    if not isinstance(config.level, str):
        config.level = "DEBUG"
    if not isinstance(config.fmt, str):
        config.fmt = "colored"
    if not isinstance(config.file_path, str):
        config.file_path = "logs/app.log"
    if not isinstance(config.to_file, bool):
        config.to_file = False
    if not isinstance(config.max_bytes, int):
        config.max_bytes = 10485760
    return config


def _make_formatter(fmt: str) -> logging.Formatter:
    return JsonFormatter() if fmt == "json" else ColoredFormatter()


def _file_handlers(config: _LogConfig) -> list[logging.Handler]:
    """Создаёт (один раз) общие файловые хендлеры."""
    global _FILE_HANDLER, _ERROR_HANDLER

    log_path = Path(config.file_path)
    log_dir = str(log_path.parent)

    if _FILE_HANDLER is None:
        stem = log_path.stem
        service_name = os.getenv("SERVICE_NAME")
        if service_name:
            stem = f"{stem}_{service_name}"
        _FILE_HANDLER = SizeRotatingFileHandler(log_dir, config.max_bytes, stem)
        _FILE_HANDLER.setFormatter(_make_formatter(config.fmt))

    if _ERROR_HANDLER is None:
        _ERROR_HANDLER = SizeRotatingFileHandler(log_dir, config.max_bytes, "error")
        _ERROR_HANDLER.setLevel(logging.ERROR)
        _ERROR_HANDLER.setFormatter(_make_formatter(config.fmt))

    return [_FILE_HANDLER, _ERROR_HANDLER]


def setup_logging() -> None:
    """
    Инициализирует систему логирования.
    Может безопасно вызываться многократно.
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return
    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)

    # Уровни для сторонних библиотек
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Возвращает настроенный логгер.
    Использует кэширование для избежания дублирования хендлеров.

    Args:
        name: Имя логгера

    Returns:
        Настроенный логгер
    """
    if name in _loggers:
        return _loggers[name]

    config = _read_log_config()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.level.upper(), logging.DEBUG))

    if not logger.handlers:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_make_formatter(config.fmt))
        logger.addHandler(console)

        if config.to_file:
            for handler in _file_handlers(config):
                logger.addHandler(handler)

    logger.propagate = False

    _loggers[name] = logger
    return logger


# =============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def _get_caller_info() -> dict[str, Any]:
    """
    Получает информацию о коде, вызвавшем функцию логирования.

    Returns:
        Словарь caller_function / caller_module / caller_file / caller_line
    """
    frame = inspect.currentframe()
    caller_frame = None
    try:
        if frame is None:
            return {}

        # [0] _get_caller_info, [1] log_*, [2] вызывающий код
        caller_frame = frame.f_back
        if caller_frame is not None:
            caller_frame = caller_frame.f_back
        # log_debug/log_warning проксируют в log_info
        if caller_frame is not None and caller_frame.f_code.co_name in ("log_debug", "log_warning"):
            caller_frame = caller_frame.f_back
        if caller_frame is None:
            return {}

        frame_info = inspect.getframeinfo(caller_frame)
        module = inspect.getmodule(caller_frame)

        return {
            "caller_function": caller_frame.f_code.co_name,
            "caller_module": module.__name__ if module else "unknown",
            "caller_file": Path(frame_info.filename).name if frame_info.filename else "unknown",
            "caller_line": frame_info.lineno,
        }
    except Exception:
        return {}
    finally:
        # Освобождаем ссылки на фреймы
        del frame
        del caller_frame


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Асинхронная функция логирования.

    Args:
        message: Сообщение
        type_msg: Уровень сообщения
        logger_name: Имя логгера
        extra: Дополнительные данные
    """
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}

    match type_msg:
        case TypeMsg.DEBUG:
            logger.debug(message, extra=record_extra)
        case TypeMsg.WARNING:
            logger.warning(message, extra=record_extra)
        case TypeMsg.ERROR:
            logger.error(message, extra=record_extra)
        case TypeMsg.CRITICAL:
            logger.critical(message, extra=record_extra)
        case _:
            logger.info(message, extra=record_extra)


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование DEBUG уровня."""
    await log_info(message, type_msg=TypeMsg.DEBUG, logger_name=logger_name, extra=extra)


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование WARNING уровня."""
    await log_info(message, type_msg=TypeMsg.WARNING, logger_name=logger_name, extra=extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """
    Логирование ERROR уровня.

    Args:
        message: Сообщение об ошибке
        logger_name: Имя логгера
        extra: Дополнительные данные
        exc_info: Включать ли трейсбек исключения
    """
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}
    logger.error(message, extra=record_extra, exc_info=exc_info)
