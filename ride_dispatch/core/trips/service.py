# ride_dispatch/core/trips/service.py
"""
Управление состоянием поездки.

Привязка водителя после принятия предложения, фиксация неуспешной
диспетчеризации, отмена, код подтверждения посадки и завершение поездки.
"""

from __future__ import annotations

import secrets
from typing import Optional, Protocol, Sequence

from ride_dispatch.common.constants import TripStatus, TypeMsg
from ride_dispatch.common.exceptions import ConflictError, NotFoundError, ValidationError
from ride_dispatch.common.logger import log_info, log_warning
from ride_dispatch.core.dispatch.models import Trip
from ride_dispatch.core.dispatch.signals import TransitionSignals
from ride_dispatch.core.notifications.notifier import DriverNotifier
from ride_dispatch.core.trips.state_machine import TripStateMachine
from ride_dispatch.infra.event_bus import EventTypes


class TripStore(Protocol):
    """Контракт репозитория поездок."""

    async def get(self, trip_id: int) -> Optional[Trip]: ...

    async def assign_driver(self, trip_id: int, driver_id: int) -> Optional[Trip]: ...

    async def cancel(self, trip_id: int, reason: str | None, from_statuses: Sequence[TripStatus]) -> Optional[Trip]: ...

    async def set_otp(self, trip_id: int, otp_code: str) -> Optional[Trip]: ...

    async def start(
        self, trip_id: int, driver_id: int, otp_code: str, from_statuses: Sequence[TripStatus]
    ) -> Optional[Trip]: ...

    async def complete(
        self,
        trip_id: int,
        driver_id: int,
        final_price: int | None,
        actual_distance: float | None,
        actual_duration: int | None,
    ) -> Optional[Trip]: ...


class TripStateManager:
    """Переходы поездки, которые нужны диспетчеризации и водителю."""

    def __init__(
        self,
        repository: TripStore,
        signals: TransitionSignals | None = None,
        notifier: DriverNotifier | None = None,
        otp_length: int = 6,
    ) -> None:
        self._repo = repository
        self._signals = signals
        self._notifier = notifier
        self._otp_length = otp_length

    async def find_trip(self, trip_id: int) -> Optional[Trip]:
        return await self._repo.get(trip_id)

    async def get_trip(self, trip_id: int) -> Trip:
        trip = await self._repo.get(trip_id)
        if trip is None:
            raise NotFoundError(f"Поездка {trip_id} не найдена")
        return trip

    async def _reject_transition(self, trip_id: int, target: TripStatus) -> ConflictError:
        """Перечитывает поездку, чтобы отличить 'нет такой' от 'не тот статус'."""
        trip = await self.get_trip(trip_id)
        return ConflictError(f"Поездка {trip_id} в статусе {trip.status}: переход в {target} невозможен")

    async def bind_driver(self, trip_id: int, driver_id: int) -> Trip:
        """
        Назначает водителя поездке (pending → accepted).

        Raises:
            NotFoundError: поездки нет
            ConflictError: поездка не pending или водитель уже назначен
        """
        trip = await self._repo.assign_driver(trip_id, driver_id)
        if trip is None:
            raise await self._reject_transition(trip_id, TripStatus.ACCEPTED)

        await log_info(f"Водитель {driver_id} назначен на поездку {trip_id}", type_msg=TypeMsg.INFO)
        if self._notifier is not None:
            await self._notifier.trip_event(EventTypes.TRIP_ASSIGNED, trip_id, driver_id=driver_id)
        return trip

    async def mark_dispatch_failed(self, trip_id: int, reason: str) -> None:
        """
        Фиксирует, что водитель не найден.
        Поездка остаётся pending, клиент может запустить поиск повторно.
        """
        await log_warning(f"Диспетчеризация поездки {trip_id} не удалась: {reason}")
        if self._notifier is not None:
            await self._notifier.trip_event(EventTypes.TRIP_DISPATCH_FAILED, trip_id, reason=reason)

    async def cancel_trip(self, trip_id: int, reason: str | None = None) -> Trip:
        """
        Отменяет поездку (кроме завершённых и уже отменённых).
        Будит ожидание ответа водителя по этой поездке.
        """
        trip = await self._repo.cancel(trip_id, reason, TripStateMachine.sources_for(TripStatus.CANCELLED))
        if trip is None:
            raise await self._reject_transition(trip_id, TripStatus.CANCELLED)

        await log_info(f"Поездка {trip_id} отменена: {reason}", type_msg=TypeMsg.INFO)
        if self._signals is not None:
            await self._signals.notify_trip_cancelled(trip_id)
        if self._notifier is not None:
            await self._notifier.trip_event(EventTypes.TRIP_CANCELLED, trip_id, reason=reason)
        return trip

    def _new_otp(self) -> str:
        # Без ведущего нуля: ровно otp_length цифр
        low = 10 ** (self._otp_length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def generate_otp(self, trip_id: int) -> str:
        """Генерирует и сохраняет код подтверждения посадки."""
        otp = self._new_otp()
        trip = await self._repo.set_otp(trip_id, otp)
        if trip is None:
            raise NotFoundError(f"Поездка {trip_id} не найдена")
        await log_info(f"Код посадки сгенерирован для поездки {trip_id}", type_msg=TypeMsg.DEBUG)
        return otp

    async def start_with_otp(self, trip_id: int, driver_id: int, otp: str) -> Trip:
        """
        Начинает поездку после проверки кода (accepted/waiting_for_pickup → in_progress).

        Raises:
            NotFoundError: поездки нет или она не у этого водителя
            ConflictError: поездка в неподходящем статусе
            ValidationError: неверный код
        """
        trip = await self.get_trip(trip_id)
        if trip.driver_id != driver_id:
            raise NotFoundError(f"Поездка {trip_id} не найдена у водителя {driver_id}")
        if not TripStateMachine.can_transition(trip.status, TripStatus.IN_PROGRESS):
            raise ConflictError(f"Поездка {trip_id} в статусе {trip.status}: начать нельзя")
        if not otp or trip.otp_code != otp:
            raise ValidationError("Неверный код подтверждения")

        started = await self._repo.start(
            trip_id, driver_id, otp, TripStateMachine.sources_for(TripStatus.IN_PROGRESS)
        )
        if started is None:
            raise await self._reject_transition(trip_id, TripStatus.IN_PROGRESS)

        await log_info(f"Поездка {trip_id} начата", type_msg=TypeMsg.INFO)
        if self._notifier is not None:
            await self._notifier.trip_event(EventTypes.TRIP_STARTED, trip_id, driver_id=driver_id)
        return started

    async def complete_trip(
        self,
        trip_id: int,
        driver_id: int,
        final_price: int | None = None,
        actual_distance: float | None = None,
        actual_duration: int | None = None,
    ) -> Trip:
        """Завершает поездку (только из in_progress)."""
        trip = await self.get_trip(trip_id)
        if trip.driver_id != driver_id:
            raise NotFoundError(f"Поездка {trip_id} не найдена у водителя {driver_id}")
        if not TripStateMachine.can_transition(trip.status, TripStatus.COMPLETED):
            raise ConflictError(f"Поездка {trip_id} в статусе {trip.status}: завершить нельзя")

        completed = await self._repo.complete(trip_id, driver_id, final_price, actual_distance, actual_duration)
        if completed is None:
            raise await self._reject_transition(trip_id, TripStatus.COMPLETED)

        await log_info(f"Поездка {trip_id} завершена, итог {completed.final_price}", type_msg=TypeMsg.INFO)
        if self._notifier is not None:
            await self._notifier.trip_event(
                EventTypes.TRIP_COMPLETED, trip_id, driver_id=driver_id, final_price=completed.final_price
            )
        return completed
