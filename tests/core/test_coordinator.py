# tests/core/test_coordinator.py
"""
Тесты координатора диспетчеризации на хранилищах в памяти.

Водители отвечают через DriverResponder: он подставляется вместо
уведомителя и отвечает на предложение так, как задано в answers.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from ride_dispatch.common.constants import (
    BookingRequestStatus,
    DispatchOutcome,
    DispatchReason,
    TripStatus,
)
from ride_dispatch.common.exceptions import ConflictError, TransientStoreError
from ride_dispatch.core.dispatch.coordinator import DispatchCoordinator
from ride_dispatch.core.dispatch.geo_index import GeoDriverIndex, InMemoryDriverDirectory
from ride_dispatch.core.dispatch.models import BookingRequest, Trip, WaitResult, utc_now
from ride_dispatch.core.dispatch.request_store import InMemoryRequestStore
from ride_dispatch.core.dispatch.signals import TransitionSignals
from ride_dispatch.core.dispatch.waiter import ResponseWaiter
from ride_dispatch.core.notifications.notifier import DriverNotifier
from ride_dispatch.core.trips.repository import InMemoryTripRepository
from ride_dispatch.core.trips.service import TripStateManager
from ride_dispatch.infra.event_bus import EventTypes


class DriverResponder:
    """Имитирует приложения водителей: отвечает на новые предложения."""

    def __init__(self, answers: dict[int, str] | None = None, delay: float = 0.01) -> None:
        self.answers = answers or {}
        self.delay = delay
        self.store: Optional[InMemoryRequestStore] = None
        self.offered: list[int] = []
        self.resolved: list[tuple[int, BookingRequestStatus]] = []
        self._tasks: list[asyncio.Task] = []

    async def request_created(self, request: BookingRequest, trip: Trip | None = None) -> bool:
        self.offered.append(request.driver_id)
        answer = self.answers.get(request.driver_id)
        if answer is not None:
            self._tasks.append(asyncio.create_task(self._answer(request, answer)))
        return True

    async def request_resolved(self, request: BookingRequest) -> bool:
        self.resolved.append((request.id, request.status))
        return True

    async def _answer(self, request: BookingRequest, answer: str) -> None:
        await asyncio.sleep(self.delay)
        if answer == "accept":
            await self.store.accept(request.id, request.driver_id)
        elif answer == "reject":
            await self.store.reject(request.id, request.driver_id, "Не по пути")


@dataclass
class Engine:
    coordinator: DispatchCoordinator
    store: InMemoryRequestStore
    trips: TripStateManager
    repository: InMemoryTripRepository
    responder: DriverResponder
    event_bus: AsyncMock


def _build(
    directory: InMemoryDriverDirectory,
    repository: InMemoryTripRepository,
    signals: TransitionSignals,
    event_bus: AsyncMock,
    answers: dict[int, str] | None = None,
    accept_timeout: float = 60.0,
    poll_interval: float = 10.0,
    store: InMemoryRequestStore | None = None,
) -> Engine:
    trips = TripStateManager(repository, signals, DriverNotifier(event_bus))
    store = store or InMemoryRequestStore(signals, trip_reader=trips.find_trip)
    responder = DriverResponder(answers)
    responder.store = store
    waiter = ResponseWaiter(store, trips.find_trip, signals, poll_interval=poll_interval)
    coordinator = DispatchCoordinator(
        GeoDriverIndex(directory),
        store,
        waiter,
        trips,
        responder,
        accept_timeout=accept_timeout,
        max_attempts=3,
        radius_km=5.0,
    )
    return Engine(coordinator, store, trips, repository, responder, event_bus)


def _published(event_bus: AsyncMock) -> list[str]:
    return [c.args[0].event_type for c in event_bus.publish.await_args_list]


class TestDispatchScenarios:
    """Полные сценарии диспетчеризации."""

    @pytest.mark.asyncio
    async def test_reject_then_accept(
        self, three_drivers, trip_repository, signals, mock_event_bus
    ) -> None:
        """Ближайший отклоняет, второй принимает: третьему предложение не уходит."""
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus, {11: "reject", 12: "accept"})
        trip = await engine.trips.get_trip(1)

        result = await asyncio.wait_for(engine.coordinator.dispatch(trip), timeout=2.0)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.driver_id == 12
        assert result.attempts == 2
        assert result.to_dict() == {"success": True, "message": "Driver assigned successfully", "driverId": 12}
        assert engine.responder.offered == [11, 12]

        requests = await engine.store.list_for_trip(1)
        assert [(r.driver_id, r.status) for r in requests] == [
            (11, BookingRequestStatus.REJECTED),
            (12, BookingRequestStatus.ACCEPTED),
        ]
        assert [r.id for r in requests] == result.request_ids

        trip = await engine.trips.get_trip(1)
        assert trip.status == TripStatus.ACCEPTED
        assert trip.driver_id == 12
        assert EventTypes.TRIP_ASSIGNED in _published(mock_event_bus)
        assert [status for _, status in engine.responder.resolved] == [
            BookingRequestStatus.REJECTED,
            BookingRequestStatus.ACCEPTED,
        ]

    @pytest.mark.asyncio
    async def test_nearest_accepts(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus, {11: "accept"})

        result = await engine.coordinator.dispatch(await engine.trips.get_trip(1))

        assert result.driver_id == 11
        assert result.attempts == 1
        assert result.driver.distance_km == 1.2
        assert len(await engine.store.list_for_trip(1)) == 1

    @pytest.mark.asyncio
    async def test_no_drivers(self, trip_repository, signals, mock_event_bus) -> None:
        """Нет водителей: ни одного предложения, поездка остаётся pending."""
        engine = _build(InMemoryDriverDirectory(), trip_repository, signals, mock_event_bus)

        result = await engine.coordinator.dispatch(await engine.trips.get_trip(1))

        assert result.outcome == DispatchOutcome.EXHAUSTED
        assert result.reason == DispatchReason.NO_DRIVERS_IN_AREA
        assert result.attempts == 0
        assert result.to_dict() == {
            "success": False,
            "message": "No drivers available in your area",
            "reason": "no_drivers_in_area",
        }
        assert await engine.store.list_for_trip(1) == []
        assert (await engine.trips.get_trip(1)).status == TripStatus.PENDING
        assert EventTypes.TRIP_DISPATCH_FAILED in _published(mock_event_bus)

    @pytest.mark.asyncio
    async def test_all_time_out(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        """Никто не ответил: три истёкших предложения и исход exhausted."""
        engine = _build(
            three_drivers, trip_repository, signals, mock_event_bus,
            accept_timeout=0.2, poll_interval=0.05,
        )

        started = time.monotonic()
        result = await asyncio.wait_for(engine.coordinator.dispatch(await engine.trips.get_trip(1)), timeout=5.0)
        elapsed = time.monotonic() - started

        assert result.outcome == DispatchOutcome.EXHAUSTED
        assert result.reason == DispatchReason.NO_DRIVER_ACCEPTED
        assert result.attempts == 3
        assert result.message == "Unable to find available driver. Please try again."
        assert 0.5 <= elapsed < 3.0

        requests = await engine.store.list_for_trip(1)
        assert [r.driver_id for r in requests] == [11, 12, 13]
        assert all(r.status == BookingRequestStatus.EXPIRED for r in requests)
        assert (await engine.trips.get_trip(1)).status == TripStatus.PENDING

    @pytest.mark.asyncio
    async def test_at_most_three_attempts_in_distance_order(
        self, driver_factory, trip_repository, signals, mock_event_bus
    ) -> None:
        directory = InMemoryDriverDirectory([
            driver_factory(21, 4.0),
            driver_factory(22, 0.8),
            driver_factory(23, 2.5),
            driver_factory(24, 1.1),
            driver_factory(25, 3.3),
        ])
        answers = {driver_id: "reject" for driver_id in range(21, 26)}
        engine = _build(directory, trip_repository, signals, mock_event_bus, answers)

        result = await asyncio.wait_for(engine.coordinator.dispatch(await engine.trips.get_trip(1)), timeout=2.0)

        assert result.outcome == DispatchOutcome.EXHAUSTED
        assert result.attempts == 3
        assert engine.responder.offered == [22, 24, 23]

    @pytest.mark.asyncio
    async def test_single_pending_at_a_time(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        """В каждый момент у поездки не больше одного pending-предложения."""
        engine = _build(
            three_drivers, trip_repository, signals, mock_event_bus,
            accept_timeout=0.1, poll_interval=0.02,
        )
        observed: list[int] = []

        async def watch() -> None:
            while True:
                requests = await engine.store.list_for_trip(1)
                observed.append(sum(r.status == BookingRequestStatus.PENDING for r in requests))
                await asyncio.sleep(0.005)

        watcher = asyncio.create_task(watch())
        try:
            await asyncio.wait_for(engine.coordinator.dispatch(await engine.trips.get_trip(1)), timeout=5.0)
        finally:
            watcher.cancel()

        assert observed
        assert max(observed) <= 1

    @pytest.mark.asyncio
    async def test_cancel_during_wait(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        """Отмена поездки прерывает ожидание сразу, без дедлайна."""
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus)

        task = asyncio.create_task(engine.coordinator.dispatch(await engine.trips.get_trip(1)))
        await asyncio.sleep(0.05)
        await engine.trips.cancel_trip(1, "Клиент передумал")

        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.outcome == DispatchOutcome.CANCELLED
        assert result.reason == DispatchReason.TRIP_CANCELLED
        assert result.message == "Trip was cancelled during dispatch"
        requests = await engine.store.list_for_trip(1)
        assert len(requests) == 1
        assert requests[0].status == BookingRequestStatus.EXPIRED
        assert engine.responder.offered == [11]

    @pytest.mark.asyncio
    async def test_cancel_between_attempts(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        """Отмена после отказа: следующему водителю предложение не отправляется."""
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus, {11: "reject", 12: "accept"})
        responder = engine.responder

        async def cancel_on_resolve(request: BookingRequest) -> bool:
            responder.resolved.append((request.id, request.status))
            await engine.trips.cancel_trip(1, "Клиент передумал")
            return True

        responder.request_resolved = cancel_on_resolve

        result = await asyncio.wait_for(engine.coordinator.dispatch(await engine.trips.get_trip(1)), timeout=2.0)

        assert result.outcome == DispatchOutcome.CANCELLED
        assert responder.offered == [11]
        requests = await engine.store.list_for_trip(1)
        assert [(r.driver_id, r.status) for r in requests] == [(11, BookingRequestStatus.REJECTED)]

    @pytest.mark.asyncio
    async def test_already_cancelled_trip(self, three_drivers, trip_repository, signals, mock_event_bus) -> None:
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus)
        await engine.trips.cancel_trip(1)

        result = await engine.coordinator.dispatch(await engine.trips.get_trip(1))

        assert result.outcome == DispatchOutcome.CANCELLED
        assert await engine.store.list_for_trip(1) == []

    @pytest.mark.asyncio
    async def test_trip_not_pending(
        self, three_drivers, trip_repository, signals, mock_event_bus, trip_factory
    ) -> None:
        trip_repository.add(trip_factory(1, status=TripStatus.ACCEPTED, driver_id=5))
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus)

        with pytest.raises(ConflictError):
            await engine.coordinator.dispatch(await engine.trips.get_trip(1))

    @pytest.mark.asyncio
    async def test_task_cancellation_voids_request(
        self, three_drivers, trip_repository, signals, mock_event_bus
    ) -> None:
        """Отмена задачи диспетчеризации закрывает висящее предложение."""
        engine = _build(three_drivers, trip_repository, signals, mock_event_bus)

        task = asyncio.create_task(engine.coordinator.dispatch(await engine.trips.get_trip(1)))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        requests = await engine.store.list_for_trip(1)
        assert [r.status for r in requests] == [BookingRequestStatus.EXPIRED]
        assert signals.watcher_count() == 0


class FlakyStore(InMemoryRequestStore):
    """Первое создание предложения падает с TransientStoreError."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failures = 1

    async def create(self, trip_id: int, driver_id: int, ttl_seconds: float) -> BookingRequest:
        if self.failures:
            self.failures -= 1
            raise TransientStoreError("PostgreSQL недоступен")
        return await super().create(trip_id, driver_id, ttl_seconds)


class TestStoreFailures:
    """Сбои хранилища внутри попытки."""

    @pytest.mark.asyncio
    async def test_transient_error_counts_as_attempt(
        self, three_drivers, trip_repository, signals, mock_event_bus
    ) -> None:
        store = FlakyStore(signals, trip_reader=trip_repository.get)
        engine = _build(
            three_drivers, trip_repository, signals, mock_event_bus,
            {11: "accept", 12: "accept"}, store=store,
        )

        result = await asyncio.wait_for(engine.coordinator.dispatch(await engine.trips.get_trip(1)), timeout=2.0)

        assert result.outcome == DispatchOutcome.ASSIGNED
        assert result.driver_id == 12
        assert result.attempts == 2
        assert engine.responder.offered == [12]

    @pytest.mark.asyncio
    async def test_stale_request_voided_before_next_attempt(self, three_drivers, trip_factory) -> None:
        """Предложение, которое не удалось закрыть, закрывается перед следующей попыткой."""
        trip = trip_factory(1)
        first = BookingRequest(id=1, trip_id=1, driver_id=11, expires_at=utc_now())
        second = BookingRequest(id=2, trip_id=1, driver_id=12, expires_at=utc_now())

        store = MagicMock()
        store.create = AsyncMock(side_effect=[first, second])
        store.void = AsyncMock(side_effect=[TransientStoreError("down"), True])
        waiter = MagicMock()
        waiter.wait = AsyncMock(side_effect=[TransientStoreError("down"), WaitResult.ACCEPTED])
        trips = MagicMock()
        trips.bind_driver = AsyncMock(return_value=trip)
        trips.find_trip = AsyncMock(return_value=trip)
        trips.mark_dispatch_failed = AsyncMock()

        coordinator = DispatchCoordinator(GeoDriverIndex(three_drivers), store, waiter, trips)
        result = await coordinator.dispatch(trip)

        assert result.driver_id == 12
        assert result.attempts == 2
        assert [c.args[0] for c in store.void.await_args_list] == [1, 1]
        # Повторное закрытие случилось до создания второго предложения
        assert store.create.await_count == 2
        trips.bind_driver.assert_awaited_once_with(1, 12)

    @pytest.mark.asyncio
    async def test_bind_failure_moves_to_next(self, three_drivers, trip_factory) -> None:
        """Принятие, которое не удалось закрепить за поездкой, считается прерванной попыткой."""
        trip = trip_factory(1)
        store = MagicMock()
        store.create = AsyncMock(side_effect=lambda trip_id, driver_id, ttl: BookingRequest(
            id=driver_id, trip_id=trip_id, driver_id=driver_id, expires_at=utc_now()
        ))
        store.void = AsyncMock(return_value=False)
        waiter = MagicMock()
        waiter.wait = AsyncMock(return_value=WaitResult.ACCEPTED)
        trips = MagicMock()
        trips.bind_driver = AsyncMock(side_effect=[ConflictError("занято"), trip])
        trips.find_trip = AsyncMock(return_value=trip)
        trips.mark_dispatch_failed = AsyncMock()

        coordinator = DispatchCoordinator(GeoDriverIndex(three_drivers), store, waiter, trips)
        result = await coordinator.dispatch(trip)

        assert result.driver_id == 12
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_bind_failure_on_cancelled_trip(self, three_drivers, trip_factory) -> None:
        trip = trip_factory(1)
        store = MagicMock()
        store.create = AsyncMock(return_value=BookingRequest(id=1, trip_id=1, driver_id=11, expires_at=utc_now()))
        waiter = MagicMock()
        waiter.wait = AsyncMock(return_value=WaitResult.ACCEPTED)
        trips = MagicMock()
        trips.bind_driver = AsyncMock(side_effect=ConflictError("отменена"))
        # Перед предложением поездка ещё pending, к моменту назначения уже отменена
        trips.find_trip = AsyncMock(side_effect=[trip, trip_factory(1, status=TripStatus.CANCELLED)])

        coordinator = DispatchCoordinator(GeoDriverIndex(three_drivers), store, waiter, trips)
        result = await coordinator.dispatch(trip)

        assert result.outcome == DispatchOutcome.CANCELLED
        assert store.create.await_count == 1

    @pytest.mark.asyncio
    async def test_directory_failure_propagates(self, trip_factory) -> None:
        directory = MagicMock()
        directory.query = AsyncMock(side_effect=TransientStoreError("down"))
        coordinator = DispatchCoordinator(GeoDriverIndex(directory), MagicMock(), MagicMock(), MagicMock())

        with pytest.raises(TransientStoreError):
            await coordinator.dispatch(trip_factory(1))
