# ride_dispatch/infra/signal_relay.py
"""
Ретрансляция сигналов переходов между процессами через Redis Pub/Sub.

Каналы (с namespace):
- booking_request:{request_id}: предложение вышло из pending
- trip_cancelled:{trip_id}: поездка отменена
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.logger import log_debug, log_error, log_info
from ride_dispatch.infra.redis_client import RedisClient

if TYPE_CHECKING:
    from ride_dispatch.core.dispatch.signals import TransitionSignals

REQUEST_CHANNEL = "booking_request"
TRIP_CANCELLED_CHANNEL = "trip_cancelled"


class RedisSignalRelay:
    """
    Публикует локальные переходы в Redis и пересылает чужие в TransitionSignals.
    Без релея ожидание всё равно завершится по интервалу опроса.
    """

    def __init__(self, redis: RedisClient, signals: "TransitionSignals") -> None:
        self._redis = redis
        self._signals = signals
        self._pubsub = None
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Подписаться на каналы и запустить чтение сообщений."""
        if self._running:
            return

        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(
            self._redis.make_channel(f"{REQUEST_CHANNEL}:*"),
            self._redis.make_channel(f"{TRIP_CANCELLED_CHANNEL}:*"),
        )
        self._running = True
        self._signals.attach_publisher(self)
        self._task = asyncio.create_task(self._listen(), name="signal-relay")
        await log_info("Ретрансляция сигналов через Redis запущена", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Остановить чтение и отписаться."""
        self._running = False
        self._signals.attach_publisher(None)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None

    async def publish_request_transition(self, request_id: int, status: str) -> None:
        await self._redis.publish_json(f"{REQUEST_CHANNEL}:{request_id}", {"status": status})

    async def publish_trip_cancelled(self, trip_id: int) -> None:
        await self._redis.publish_json(f"{TRIP_CANCELLED_CHANNEL}:{trip_id}", {"status": "cancelled"})

    async def _listen(self) -> None:
        """Слушать сообщения из Redis."""
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                await self.dispatch_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка чтения сигналов из Redis: {e}")
                await asyncio.sleep(1)

    async def dispatch_message(self, message: dict[str, Any]) -> None:
        """Разбирает канал сообщения и будит локальных ожидающих."""
        if message.get("type") not in ("message", "pmessage"):
            return

        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")

        prefix = f"{self._redis.namespace}:"
        if channel.startswith(prefix):
            channel = channel[len(prefix):]

        kind, _, raw_id = channel.rpartition(":")
        try:
            entity_id = int(raw_id)
        except ValueError:
            return

        if kind == REQUEST_CHANNEL:
            self._signals.wake_request(entity_id)
        elif kind == TRIP_CANCELLED_CHANNEL:
            self._signals.wake_trip(entity_id)
        else:
            return

        data = message.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                data = {"raw": data}
        await log_debug(f"Сигнал из Redis: {kind} {entity_id} {data}")
