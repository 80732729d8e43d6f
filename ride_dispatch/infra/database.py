# ride_dispatch/infra/database.py
"""
Менеджер базы данных PostgreSQL.
Пул соединений, повтор подключения при старте и транзакции.

Запросы НЕ повторяются автоматически: ошибка соединения во время запроса
превращается в TransientStoreError и поднимается вызывающему коду.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncGenerator, Awaitable, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool, Record

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.exceptions import ConflictError, TransientStoreError
from ride_dispatch.common.logger import log_error, log_info, log_warning

T = TypeVar("T")

# Ошибки, означающие недоступность хранилища
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncio.TimeoutError,
    ConnectionRefusedError,
    OSError,
)


def retry_on_connection_error(
    max_attempts: int = 3,
    delay: float = 1.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Декоратор повтора при ошибках подключения.
    Применяется только к установке соединения.

    Args:
        max_attempts: Максимальное количество попыток
        delay: Базовая задержка между попытками (секунды)
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: BaseException | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except CONNECTION_ERRORS as e:
                    last_error = e
                    if attempt < max_attempts:
                        await log_warning(
                            f"Ошибка подключения к БД (попытка {attempt}/{max_attempts}): {e}"
                        )
                        await asyncio.sleep(delay * attempt)
                    else:
                        await log_error(f"Не удалось подключиться к БД после {max_attempts} попыток: {e}")

            raise TransientStoreError(f"PostgreSQL недоступен: {last_error}")

        return wrapper

    return decorator


def translate_store_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Превращает ошибки драйвера в доменные исключения.
    - ошибки соединения → TransientStoreError
    - нарушение уникальности → ConflictError
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(f"Нарушено ограничение уникальности: {e.constraint_name}") from e
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Хранилище временно недоступно: {e}") from e

    return wrapper


class DatabaseManager:
    """Менеджер подключений к PostgreSQL."""

    def __init__(self) -> None:
        self._pool: Pool | None = None

    @property
    def pool(self) -> Pool:
        """Возвращает пул соединений."""
        if self._pool is None:
            raise RuntimeError("Пул соединений не инициализирован. Вызовите connect() сначала.")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(
        self,
        dsn: str,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 30,
        attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Создаёт пул соединений к PostgreSQL.

        Args:
            dsn: DSN строка подключения
            min_size: Минимальный размер пула
            max_size: Максимальный размер пула
            command_timeout: Таймаут команд (секунды)
            attempts: Количество попыток подключения
            retry_delay: Базовая задержка между попытками
        """
        if self._pool is not None:
            return

        @retry_on_connection_error(max_attempts=attempts, delay=retry_delay)
        async def _create() -> Pool:
            return await asyncpg.create_pool(
                dsn=dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=command_timeout,
            )

        await log_info("Подключение к PostgreSQL...", type_msg=TypeMsg.INFO)
        self._pool = await _create()
        await log_info("Подключение к PostgreSQL установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает пул соединений."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            await log_info("Соединение с PostgreSQL закрыто", type_msg=TypeMsg.INFO)

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """
        Контекстный менеджер для получения соединения из пула.

        Example:
            async with db.acquire() as conn:
                rows = await conn.fetch("SELECT * FROM trips")
        """
        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """
        Контекстный менеджер для транзакции.
        Commit при успехе, rollback при ошибке.
        """
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    @translate_store_errors
    async def execute(self, query: str, *args: Any) -> str:
        """Выполняет SQL запрос без возврата данных."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    @translate_store_errors
    async def fetch(self, query: str, *args: Any) -> list[Record]:
        """Выполняет SQL запрос и возвращает все строки."""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    @translate_store_errors
    async def fetchrow(self, query: str, *args: Any) -> Record | None:
        """Выполняет SQL запрос и возвращает одну строку."""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @translate_store_errors
    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        """Выполняет SQL запрос и возвращает одно значение."""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, column=column)

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к БД."""
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL failed: {e}")
            return False


# Глобальный экземпляр
_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Возвращает глобальный экземпляр DatabaseManager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def init_db() -> None:
    """
    Инициализирует подключение к базе данных и применяет схему.
    Использует настройки из конфигурации.
    """
    from ride_dispatch.config import settings

    db = get_db()
    await db.connect(
        dsn=settings.database.dsn,
        min_size=settings.database.DB_MIN_POOL_SIZE,
        max_size=settings.database.DB_MAX_POOL_SIZE,
        command_timeout=settings.database.DB_COMMAND_TIMEOUT,
        attempts=settings.database.DB_CONNECT_ATTEMPTS,
        retry_delay=settings.database.DB_CONNECT_RETRY_DELAY,
    )
    await _init_schema(db)


async def _init_schema(db: DatabaseManager) -> None:
    """Применяет migrations/init.sql под advisory lock."""
    from ride_dispatch.config.loader import get_project_root

    schema_path = get_project_root() / "migrations" / "init.sql"
    if not schema_path.exists():
        await log_error(f"Файл схемы БД не найден: {schema_path}")
        return

    schema_sql = schema_path.read_text(encoding="utf-8")

    await log_info("Применение схемы БД...", type_msg=TypeMsg.INFO)

    # Несколько процессов могут стартовать одновременно
    async with db.transaction() as conn:
        await conn.execute("SELECT pg_advisory_xact_lock(918273645)")
        await conn.execute(schema_sql)

    await log_info("Схема БД успешно применена", type_msg=TypeMsg.INFO)


async def close_db() -> None:
    """Закрывает подключение к базе данных."""
    await get_db().disconnect()
