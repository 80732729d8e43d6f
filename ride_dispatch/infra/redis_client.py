# ride_dispatch/infra/redis_client.py
"""
Клиент Redis для межпроцессной ретрансляции сигналов (Pub/Sub).
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
from redis.asyncio.client import PubSub

from ride_dispatch.common.logger import log_error, log_info
from ride_dispatch.common.constants import TypeMsg


class RedisClient:
    """
    Асинхронный клиент Redis.
    Используется только для публикации и подписки на каналы.
    """

    def __init__(self, namespace: str = "dispatch") -> None:
        self._client: redis.Redis | None = None
        self._namespace = namespace

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def namespace(self) -> str:
        return self._namespace

    def make_channel(self, channel: str) -> str:
        """Добавляет namespace к имени канала."""
        return f"{self._namespace}:{channel}"

    async def connect(
        self,
        url: str,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis
            max_connections: Максимальное количество соединений
            namespace: Префикс каналов
        """
        if self._client is not None:
            return

        if namespace:
            self._namespace = namespace

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO)

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )

        # Проверяем подключение
        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO)

    async def publish_json(self, channel: str, data: dict[str, Any]) -> int:
        """
        Публикует JSON в канал (с namespace).

        Returns:
            Количество получивших подписчиков
        """
        return await self.client.publish(
            self.make_channel(channel),
            json.dumps(data, ensure_ascii=False, default=str),
        )

    def pubsub(self) -> PubSub:
        """Создаёт объект подписки."""
        return self.client.pubsub()

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к Redis."""
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}")
            return False


# Глобальный экземпляр
_redis_client: RedisClient | None = None


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client


async def init_redis() -> None:
    """
    Инициализирует подключение к Redis.
    Использует настройки из конфигурации.
    """
    from ride_dispatch.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
    )


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    await get_redis().disconnect()
