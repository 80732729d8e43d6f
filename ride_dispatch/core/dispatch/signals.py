# ride_dispatch/core/dispatch/signals.py
"""
Сигналы о переходах состояний внутри процесса.

Реестр asyncio.Event по предложениям и по поездкам. Ожидающий код
регистрирует своё событие через watch_*() и всегда снимает регистрацию
при выходе из контекста. Реестр живёт между open() и close().
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

from ride_dispatch.common.logger import log_debug, log_warning


class SignalPublisher(Protocol):
    """Ретранслятор сигналов в другие процессы."""

    async def publish_request_transition(self, request_id: int, status: str) -> None: ...

    async def publish_trip_cancelled(self, trip_id: int) -> None: ...


class TransitionSignals:
    """Реестр событий переходов для пробуждения ожидающих корутин."""

    def __init__(self) -> None:
        self._requests: dict[int, set[asyncio.Event]] = {}
        self._trips: dict[int, set[asyncio.Event]] = {}
        self._publisher: SignalPublisher | None = None
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> None:
        self._opened = True

    def close(self) -> None:
        """Будит всех ожидающих и очищает реестр."""
        for events in (*self._requests.values(), *self._trips.values()):
            for event in events:
                event.set()
        self._requests.clear()
        self._trips.clear()
        self._publisher = None
        self._opened = False

    def attach_publisher(self, publisher: SignalPublisher | None) -> None:
        self._publisher = publisher

    def watcher_count(self) -> int:
        """Количество зарегистрированных событий (для диагностики)."""
        return sum(len(v) for v in self._requests.values()) + sum(len(v) for v in self._trips.values())

    @staticmethod
    @contextmanager
    def _watch(registry: dict[int, set[asyncio.Event]], key: int, event: asyncio.Event) -> Iterator[asyncio.Event]:
        registry.setdefault(key, set()).add(event)
        try:
            yield event
        finally:
            watchers = registry.get(key)
            if watchers is not None:
                watchers.discard(event)
                if not watchers:
                    registry.pop(key, None)

    def watch_request(self, request_id: int, event: asyncio.Event) -> ContextManager[asyncio.Event]:
        """Контекст: событие будет выставлено при любом переходе предложения."""
        return self._watch(self._requests, request_id, event)

    def watch_trip(self, trip_id: int, event: asyncio.Event) -> ContextManager[asyncio.Event]:
        """Контекст: событие будет выставлено при отмене поездки."""
        return self._watch(self._trips, trip_id, event)

    def wake_request(self, request_id: int) -> None:
        """Будит локальных ожидающих предложения (без ретрансляции)."""
        for event in self._requests.get(request_id, ()):
            event.set()

    def wake_trip(self, trip_id: int) -> None:
        for event in self._trips.get(trip_id, ()):
            event.set()

    async def notify_request(self, request_id: int, status: str) -> None:
        """Сообщает о переходе предложения локально и, если есть, в другие процессы."""
        self.wake_request(request_id)
        await log_debug(f"Сигнал перехода предложения {request_id} → {status}")

        if self._publisher is not None:
            try:
                await self._publisher.publish_request_transition(request_id, status)
            except Exception as e:
                await log_warning(f"Не удалось ретранслировать переход предложения {request_id}: {e}")

    async def notify_trip_cancelled(self, trip_id: int) -> None:
        """Сообщает об отмене поездки локально и, если есть, в другие процессы."""
        self.wake_trip(trip_id)
        await log_debug(f"Сигнал отмены поездки {trip_id}")

        if self._publisher is not None:
            try:
                await self._publisher.publish_trip_cancelled(trip_id)
            except Exception as e:
                await log_warning(f"Не удалось ретранслировать отмену поездки {trip_id}: {e}")
