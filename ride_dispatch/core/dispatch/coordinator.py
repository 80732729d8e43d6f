# ride_dispatch/core/dispatch/coordinator.py
"""
Координатор диспетчеризации одной поездки.

Searching → AwaitingDriverResponse → Assigned | Exhausted | Cancelled

Кандидаты перебираются строго по одному в порядке возрастания расстояния,
не более max_attempts. Предложение никогда не отправляется нескольким
водителям одновременно.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ride_dispatch.common.constants import (
    BookingRequestStatus,
    DispatchOutcome,
    DispatchReason,
    TripStatus,
    TypeMsg,
)
from ride_dispatch.common.exceptions import ConflictError, TransientStoreError
from ride_dispatch.common.logger import log_error, log_info, log_warning
from ride_dispatch.core.dispatch.geo_index import GeoDriverIndex
from ride_dispatch.core.dispatch.models import (
    BookingRequest,
    DispatchResult,
    DriverCandidate,
    Trip,
    WaitResult,
)
from ride_dispatch.core.dispatch.request_store import RequestStore
from ride_dispatch.core.dispatch.waiter import ResponseWaiter

if TYPE_CHECKING:
    from ride_dispatch.core.notifications.notifier import DriverNotifier
    from ride_dispatch.core.trips.service import TripStateManager


class _Step(Enum):
    ASSIGNED = "assigned"
    CANCELLED = "cancelled"
    NEXT = "next"


@dataclass
class _DispatchState:
    request_ids: list[int] = field(default_factory=list)
    # Предложение, которое не удалось закрыть после сбоя хранилища
    stale_request_id: Optional[int] = None


class DispatchCoordinator:
    """Перебор кандидатов и интерпретация ответов водителей."""

    def __init__(
        self,
        index: GeoDriverIndex,
        store: RequestStore,
        waiter: ResponseWaiter,
        trips: "TripStateManager",
        notifier: Optional["DriverNotifier"] = None,
        accept_timeout: float = 60.0,
        max_attempts: int = 3,
        radius_km: float = 5.0,
    ) -> None:
        """
        Args:
            index: Поиск ближайших водителей
            store: Хранилище предложений
            waiter: Ожидание ответа водителя
            trips: Менеджер состояния поездки
            notifier: Уведомления водителей (best-effort)
            accept_timeout: Время на ответ водителя (сек)
            max_attempts: Максимум кандидатов за один вызов dispatch()
            radius_km: Радиус поиска (км)
        """
        self._index = index
        self._store = store
        self._waiter = waiter
        self._trips = trips
        self._notifier = notifier
        self._accept_timeout = accept_timeout
        self._max_attempts = max_attempts
        self._radius_km = radius_km

    async def dispatch(self, trip: Trip) -> DispatchResult:
        """
        Ищет водителя для поездки.

        Returns:
            DispatchResult с исходом assigned / exhausted / cancelled

        Raises:
            ConflictError: поездка уже не pending
            ValidationError: у поездки нет корректных координат подачи или региона
            TransientStoreError: справочник водителей недоступен
        """
        if trip.is_cancelled:
            return DispatchResult(DispatchOutcome.CANCELLED, reason=DispatchReason.TRIP_CANCELLED)
        if trip.status != TripStatus.PENDING:
            raise ConflictError(f"Поездка {trip.id} в статусе {trip.status}: диспетчеризация невозможна")

        candidates = await self._index.nearest_available(trip.pickup, trip.region, self._radius_km)
        if not candidates:
            await log_warning(f"Нет доступных водителей для поездки {trip.id} (регион {trip.region})")
            await self._trips.mark_dispatch_failed(trip.id, DispatchReason.NO_DRIVERS_IN_AREA)
            return DispatchResult(DispatchOutcome.EXHAUSTED, reason=DispatchReason.NO_DRIVERS_IN_AREA)

        state = _DispatchState()
        attempts = 0

        for candidate in candidates[:self._max_attempts]:
            attempts += 1
            await log_info(
                f"Поездка {trip.id}: попытка {attempts}/{self._max_attempts}, "
                f"водитель {candidate.driver_id} ({candidate.distance_km} км)",
                type_msg=TypeMsg.INFO,
            )

            step = await self._attempt(trip, candidate, state)

            if step is _Step.ASSIGNED:
                return DispatchResult(
                    DispatchOutcome.ASSIGNED,
                    driver_id=candidate.driver_id,
                    driver=candidate,
                    attempts=attempts,
                    request_ids=state.request_ids,
                )
            if step is _Step.CANCELLED:
                await log_info(f"Диспетчеризация поездки {trip.id} прервана отменой", type_msg=TypeMsg.INFO)
                return DispatchResult(
                    DispatchOutcome.CANCELLED,
                    reason=DispatchReason.TRIP_CANCELLED,
                    attempts=attempts,
                    request_ids=state.request_ids,
                )

        await log_warning(f"Ни один водитель не принял поездку {trip.id} за {attempts} попыток")
        await self._trips.mark_dispatch_failed(trip.id, DispatchReason.NO_DRIVER_ACCEPTED)
        return DispatchResult(
            DispatchOutcome.EXHAUSTED,
            reason=DispatchReason.NO_DRIVER_ACCEPTED,
            attempts=attempts,
            request_ids=state.request_ids,
        )

    async def _attempt(self, trip: Trip, candidate: DriverCandidate, state: _DispatchState) -> _Step:
        """Одно предложение одному водителю."""
        request: BookingRequest | None = None

        # Отмена между попытками: следующему водителю предложение не уходит
        if await self._trip_cancelled(trip.id):
            return _Step.CANCELLED

        if state.stale_request_id is not None and await self._void_quietly(state.stale_request_id):
            state.stale_request_id = None

        try:
            try:
                request = await self._store.create(trip.id, candidate.driver_id, self._accept_timeout)
            except ConflictError:
                if state.stale_request_id is None:
                    raise
                await log_error(f"Поездка {trip.id}: предыдущее предложение не закрыто, попытка пропущена")
                return _Step.NEXT

            state.request_ids.append(request.id)
            if self._notifier is not None:
                await self._notifier.request_created(request, trip)

            result = await self._waiter.wait(request, trip.id)
        except TransientStoreError as e:
            await log_error(
                f"Поездка {trip.id}: хранилище недоступно, попытка с водителем {candidate.driver_id} прервана: {e}"
            )
            if request is not None and not await self._void_quietly(request.id):
                state.stale_request_id = request.id
            return _Step.NEXT
        except asyncio.CancelledError:
            if request is not None:
                await self._void_quietly(request.id)
            raise

        if result is WaitResult.CANCELLED:
            await self._void_quietly(request.id)
            return _Step.CANCELLED

        await self._notify_resolved(request, result)

        if result is not WaitResult.ACCEPTED:
            await log_info(
                f"Поездка {trip.id}: ответ водителя {candidate.driver_id}: {result.value}, следующий кандидат",
                type_msg=TypeMsg.INFO,
            )
            return _Step.NEXT

        try:
            await self._trips.bind_driver(trip.id, candidate.driver_id)
        except (ConflictError, TransientStoreError) as e:
            if await self._trip_cancelled(trip.id):
                return _Step.CANCELLED
            await log_error(f"Поездка {trip.id}: не удалось назначить водителя {candidate.driver_id}: {e}")
            return _Step.NEXT

        return _Step.ASSIGNED

    async def _trip_cancelled(self, trip_id: int) -> bool:
        try:
            trip = await self._trips.find_trip(trip_id)
        except TransientStoreError:
            return False
        return trip is not None and trip.status == TripStatus.CANCELLED

    async def _void_quietly(self, request_id: int) -> bool:
        """Закрывает предложение, если оно ещё pending. False при сбое хранилища."""
        try:
            await self._store.void(request_id)
            return True
        except TransientStoreError as e:
            await log_error(f"Не удалось закрыть предложение {request_id}: {e}")
            return False

    async def _notify_resolved(self, request: BookingRequest, result: WaitResult) -> None:
        if self._notifier is None:
            return
        resolved = request.model_copy(update={"status": BookingRequestStatus(result.value)})
        await self._notifier.request_resolved(resolved)
