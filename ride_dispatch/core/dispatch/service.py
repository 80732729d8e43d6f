# ride_dispatch/core/dispatch/service.py
"""
Внешняя поверхность движка диспетчеризации.

dispatch / accept / reject / list_pending / cancel_trip, а также учёт
фоновых задач диспетчеризации по поездкам.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.exceptions import DispatchError, ValidationError
from ride_dispatch.common.logger import log_error, log_info
from ride_dispatch.core.dispatch.coordinator import DispatchCoordinator
from ride_dispatch.core.dispatch.models import DispatchResult, PendingOffer
from ride_dispatch.core.dispatch.request_store import RequestStore
from ride_dispatch.core.trips.service import TripStateManager


def _require_id(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Некорректный {name}: {value!r}")
    return value


class DispatchService:
    """Точка входа для транспорта и воркеров."""

    def __init__(
        self,
        coordinator: DispatchCoordinator,
        store: RequestStore,
        trips: TripStateManager,
    ) -> None:
        self._coordinator = coordinator
        self._store = store
        self._trips = trips
        self._tasks: dict[int, asyncio.Task] = {}

    # =========================================================================
    # ДИСПЕТЧЕРИЗАЦИЯ
    # =========================================================================

    async def run_dispatch(self, trip_id: int) -> DispatchResult:
        """Диспетчеризация поездки с полным результатом."""
        trip = await self._trips.get_trip(_require_id(trip_id, "trip_id"))
        result = await self._coordinator.dispatch(trip)
        await log_info(
            f"Диспетчеризация поездки {trip_id}: {result.outcome.value}"
            + (f" ({result.reason})" if result.reason else ""),
            type_msg=TypeMsg.INFO,
        )
        return result

    async def dispatch(self, trip_id: int) -> dict[str, Any]:
        """
        Returns:
            {success, driverId?, message, reason?}
        """
        return (await self.run_dispatch(trip_id)).to_dict()

    def start_dispatch(self, trip_id: int) -> asyncio.Task:
        """
        Запускает диспетчеризацию в фоне.
        Для поездки одновременно выполняется не более одной задачи.
        """
        running = self._tasks.get(trip_id)
        if running is not None and not running.done():
            return running

        task = asyncio.create_task(self._run_in_background(trip_id), name=f"dispatch:{trip_id}")
        self._tasks[trip_id] = task
        task.add_done_callback(lambda t: self._forget(trip_id, t))
        return task

    def _forget(self, trip_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(trip_id) is task:
            del self._tasks[trip_id]

    async def _run_in_background(self, trip_id: int) -> Optional[DispatchResult]:
        try:
            return await self.run_dispatch(trip_id)
        except DispatchError as e:
            await log_error(f"Диспетчеризация поездки {trip_id} завершилась ошибкой: {e.message}")
            return None
        except Exception as e:
            await log_error(f"Непредвиденная ошибка диспетчеризации поездки {trip_id}: {e}", exc_info=True)
            return None

    def is_dispatching(self, trip_id: int) -> bool:
        task = self._tasks.get(trip_id)
        return task is not None and not task.done()

    async def cancel_dispatch(self, trip_id: int) -> bool:
        """Прерывает фоновую диспетчеризацию поездки в этом процессе."""
        task = self._tasks.get(trip_id)
        if task is None or task.done():
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await log_info(f"Фоновая диспетчеризация поездки {trip_id} прервана", type_msg=TypeMsg.INFO)
        return True

    async def shutdown(self) -> None:
        """Прерывает все фоновые задачи."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # =========================================================================
    # ОТВЕТЫ ВОДИТЕЛЕЙ
    # =========================================================================

    async def accept(self, request_id: int, driver_id: int) -> dict[str, Any]:
        """
        Водитель принимает предложение.

        Returns:
            {requestId, status}

        Raises:
            ConflictError: предложение уже завершено, просрочено или чужое
            NotFoundError: предложения нет
        """
        request = await self._store.accept(
            _require_id(request_id, "request_id"),
            _require_id(driver_id, "driver_id"),
        )
        return request.to_dict()

    async def reject(self, request_id: int, driver_id: int, reason: str | None = None) -> dict[str, Any]:
        """Водитель отклоняет предложение."""
        request = await self._store.reject(
            _require_id(request_id, "request_id"),
            _require_id(driver_id, "driver_id"),
            reason,
        )
        return request.to_dict()

    async def list_pending(self, driver_id: int) -> list[PendingOffer]:
        """Непросроченные ожидающие предложения водителя, новые первыми."""
        return await self._store.list_pending(_require_id(driver_id, "driver_id"))

    # =========================================================================
    # ОТМЕНА
    # =========================================================================

    async def cancel_trip(self, trip_id: int, reason: str | None = None) -> dict[str, Any]:
        """
        Отменяет поездку. Идущая диспетчеризация увидит отмену через
        сигнал и вернёт исход cancelled.
        """
        trip = await self._trips.cancel_trip(_require_id(trip_id, "trip_id"), reason)
        return {"tripId": trip.id, "status": trip.status.value}
