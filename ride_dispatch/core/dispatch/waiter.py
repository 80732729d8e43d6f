# ride_dispatch/core/dispatch/waiter.py
"""
Ожидание ответа водителя на предложение.

Корутина просыпается по сигналу перехода (предложение или отмена поездки)
либо по таймауту опроса, перечитывает состояние и решает, выходить ли.
Жёсткий дедлайн равен expires_at предложения.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ride_dispatch.common.constants import TripStatus
from ride_dispatch.common.logger import log_debug
from ride_dispatch.core.dispatch.models import BookingRequest, Trip, WaitResult, utc_now
from ride_dispatch.core.dispatch.request_store import RequestStore
from ride_dispatch.core.dispatch.signals import TransitionSignals

TripReader = Callable[[int], Awaitable[Optional[Trip]]]


class ResponseWaiter:
    """Приостанавливает шаг диспетчеризации до ответа водителя или дедлайна."""

    def __init__(
        self,
        store: RequestStore,
        trip_reader: TripReader,
        signals: TransitionSignals,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            store: Хранилище предложений
            trip_reader: Чтение поездки по id (для обнаружения отмены)
            signals: Реестр сигналов переходов
            poll_interval: Максимальный интервал между перечитываниями (сек)
            clock: Источник текущего времени
        """
        self._store = store
        self._read_trip = trip_reader
        self._signals = signals
        self._poll_interval = poll_interval
        self._clock = clock

    async def _trip_cancelled(self, trip_id: int) -> bool:
        trip = await self._read_trip(trip_id)
        return trip is not None and trip.status == TripStatus.CANCELLED

    async def wait(self, request: BookingRequest, trip_id: int | None = None) -> WaitResult:
        """
        Ждёт, пока предложение не выйдет из pending или не истечёт срок.

        При отмене поездки возвращает CANCELLED, не дожидаясь дедлайна.
        asyncio.CancelledError пробрасывается; регистрации сигналов
        снимаются на любом пути выхода.
        """
        trip_id = trip_id if trip_id is not None else request.trip_id
        wakeup = asyncio.Event()

        with self._signals.watch_request(request.id, wakeup), self._signals.watch_trip(trip_id, wakeup):
            while True:
                wakeup.clear()

                current = await self._store.get(request.id)
                if current.is_terminal:
                    return WaitResult.from_status(current.status)

                if await self._trip_cancelled(trip_id):
                    await log_debug(f"Поездка {trip_id} отменена во время ожидания предложения {request.id}")
                    return WaitResult.CANCELLED

                remaining = (current.expires_at - self._clock()).total_seconds()
                if remaining <= 0:
                    await self._store.expire(request.id)
                    # Принятие могло успеть раньше истечения
                    current = await self._store.get(request.id)
                    if current.is_terminal:
                        return WaitResult.from_status(current.status)
                    # Часы хранилища отстают: ждём ещё один интервал
                    remaining = self._poll_interval

                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=min(self._poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
