# ride_dispatch/infra/event_bus.py
"""
Шина событий на базе RabbitMQ.
Через неё приходят события поездок и уходят уведомления водителям.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.logger import log_error, log_info


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    """Доменное событие."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: str = ""
    timestamp: str = field(default_factory=_utc_now_iso)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Сериализует событие в JSON."""
        return json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str) -> DomainEvent:
        """Десериализует событие из JSON."""
        parsed = json.loads(data)
        return cls(
            event_id=parsed.get("event_id", str(uuid4())),
            event_type=parsed.get("event_type", ""),
            timestamp=parsed.get("timestamp", ""),
            payload=parsed.get("payload", {}),
        )


class EventTypes:
    """Константы типов событий."""
    # Поездки
    TRIP_CREATED = "trip.created"
    TRIP_CANCELLED = "trip.cancelled"
    TRIP_ASSIGNED = "trip.assigned"
    TRIP_DISPATCH_FAILED = "trip.dispatch_failed"
    TRIP_STARTED = "trip.started"
    TRIP_COMPLETED = "trip.completed"

    # Предложения водителям
    BOOKING_REQUEST_CREATED = "booking_request.created"
    BOOKING_REQUEST_RESOLVED = "booking_request.resolved"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Шина событий на базе RabbitMQ (topic exchange).

    Реализует:
    - Публикацию событий в exchange (routing_key = тип события)
    - Подписку на события через durable очереди
    """

    def __init__(self) -> None:
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._exchange_name = "dispatch.events"

    @property
    def is_connected(self) -> bool:
        """Проверяет, активно ли соединение."""
        return self._connection is not None and not self._connection.is_closed

    async def connect(
        self,
        url: str,
        exchange_name: str | None = None,
        prefetch_count: int = 10,
    ) -> None:
        """
        Подключается к RabbitMQ.

        Args:
            url: URL RabbitMQ
            exchange_name: Имя exchange
            prefetch_count: Количество сообщений для prefetch
        """
        if self.is_connected:
            return

        if exchange_name:
            self._exchange_name = exchange_name

        await log_info("Подключение к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=prefetch_count)

        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

        await log_info("Подключение к RabbitMQ установлено", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            self._handlers = {}
            await log_info("Соединение с RabbitMQ закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> None:
        """
        Публикует событие в exchange.
        Ошибки публикации поднимаются вызывающему коду.

        Args:
            event: Доменное событие
        """
        if not self.is_connected or self._exchange is None:
            raise ConnectionError("Нет соединения с RabbitMQ")

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
        )

        await self._exchange.publish(message, routing_key=event.event_type)

        await log_info(
            f"Событие опубликовано: {event.event_type}",
            type_msg=TypeMsg.DEBUG,
        )

    async def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        queue_name: str | None = None,
    ) -> None:
        """
        Подписывается на события определённого типа.

        Args:
            event_type: Тип события (routing_key pattern)
            handler: Асинхронный обработчик события
            queue_name: Имя очереди (если None, генерируется автоматически)
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            raise ConnectionError("Нет соединения с RabbitMQ")

        self._handlers.setdefault(event_type, []).append(handler)

        if queue_name is None:
            queue_name = f"dispatch.{event_type.replace('.', '_')}"

        if queue_name not in self._queues:
            queue = await self._channel.declare_queue(queue_name, durable=True)
            await queue.bind(self._exchange, routing_key=event_type)
            self._queues[queue_name] = queue
            await queue.consume(self._make_consumer(event_type))

        await log_info(f"Подписка на события: {event_type}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[aio_pika.abc.AbstractIncomingMessage], Awaitable[None]]:
        """Создаёт consumer для обработки сообщений."""
        async def consumer(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (ValueError, UnicodeDecodeError) as e:
                    await log_error(f"Некорректное сообщение в очереди {event_type}: {e}")
                    return

                for handler in self._handlers.get(event_type, []):
                    try:
                        await handler(event)
                    except Exception as e:
                        await log_error(
                            f"Ошибка в обработчике {getattr(handler, '__name__', handler)}: {e}",
                            exc_info=True,
                        )

        return consumer

    async def health_check(self) -> bool:
        """Проверяет здоровье подключения к RabbitMQ."""
        return self.is_connected


# Глобальный экземпляр
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Возвращает глобальный экземпляр EventBus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def init_event_bus() -> None:
    """
    Инициализирует подключение к RabbitMQ.
    Использует настройки из конфигурации.
    """
    from ride_dispatch.config import settings

    await get_event_bus().connect(
        url=settings.rabbitmq.url,
        exchange_name=settings.rabbitmq.RABBITMQ_EXCHANGE,
        prefetch_count=settings.rabbitmq.RABBITMQ_PREFETCH_COUNT,
    )
    await log_info(
        f"RabbitMQ подключён: {settings.rabbitmq.RABBITMQ_HOST}:{settings.rabbitmq.RABBITMQ_PORT}",
        type_msg=TypeMsg.INFO,
    )


async def close_event_bus() -> None:
    """Закрывает подключение к RabbitMQ."""
    await get_event_bus().disconnect()
