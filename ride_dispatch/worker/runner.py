# ride_dispatch/worker/runner.py
"""
Сборка движка диспетчеризации и запуск воркеров.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.logger import log_error, log_info
from ride_dispatch.config.loader import Settings
from ride_dispatch.core.dispatch.coordinator import DispatchCoordinator
from ride_dispatch.core.dispatch.geo_index import (
    DriverDirectory,
    GeoDriverIndex,
    InMemoryDriverDirectory,
    PostgresDriverDirectory,
)
from ride_dispatch.core.dispatch.models import utc_now
from ride_dispatch.core.dispatch.request_store import (
    InMemoryRequestStore,
    PostgresRequestStore,
    RequestStore,
)
from ride_dispatch.core.dispatch.service import DispatchService
from ride_dispatch.core.dispatch.signals import TransitionSignals
from ride_dispatch.core.dispatch.waiter import ResponseWaiter
from ride_dispatch.core.notifications.notifier import DriverNotifier
from ride_dispatch.core.trips.repository import InMemoryTripRepository, TripRepository
from ride_dispatch.core.trips.service import TripStateManager, TripStore
from ride_dispatch.infra.database import DatabaseManager, close_db, get_db, init_db
from ride_dispatch.infra.event_bus import EventBus, close_event_bus, get_event_bus, init_event_bus
from ride_dispatch.infra.redis_client import close_redis, get_redis, init_redis
from ride_dispatch.infra.signal_relay import RedisSignalRelay
from ride_dispatch.worker.base import BaseWorker
from ride_dispatch.worker.dispatch import DispatchWorker
from ride_dispatch.worker.sweeper import ExpirySweeper


@dataclass
class DispatchEngine:
    """Собранные компоненты движка одного процесса."""
    signals: TransitionSignals
    store: RequestStore
    trips: TripStateManager
    index: GeoDriverIndex
    waiter: ResponseWaiter
    coordinator: DispatchCoordinator
    service: DispatchService
    notifier: DriverNotifier


def build_engine(
    settings: Settings,
    db: Optional[DatabaseManager] = None,
    event_bus: Optional[EventBus] = None,
    directory: Optional[DriverDirectory] = None,
    trip_repository: Optional[TripStore] = None,
    clock: Callable[[], datetime] = utc_now,
) -> DispatchEngine:
    """
    Собирает движок по настройкам.

    STORE_BACKEND=postgres требует db; memory работает без внешних хранилищ.
    """
    dispatch = settings.dispatch
    signals = TransitionSignals()
    signals.open()
    notifier = DriverNotifier(event_bus)

    if dispatch.STORE_BACKEND == "postgres":
        if db is None:
            raise RuntimeError("Для STORE_BACKEND=postgres нужен DatabaseManager")
        trip_repository = trip_repository or TripRepository(db)
        directory = directory or PostgresDriverDirectory(db)
    else:
        trip_repository = trip_repository or InMemoryTripRepository()
        directory = directory or InMemoryDriverDirectory()

    trips = TripStateManager(trip_repository, signals, notifier, otp_length=dispatch.OTP_LENGTH)

    if dispatch.STORE_BACKEND == "postgres":
        store: RequestStore = PostgresRequestStore(db, signals, clock=clock)
    else:
        store = InMemoryRequestStore(signals, clock=clock, trip_reader=trips.find_trip)

    index = GeoDriverIndex(directory)
    waiter = ResponseWaiter(
        store,
        trips.find_trip,
        signals,
        poll_interval=dispatch.POLL_INTERVAL_SECONDS,
        clock=clock,
    )
    coordinator = DispatchCoordinator(
        index,
        store,
        waiter,
        trips,
        notifier,
        accept_timeout=dispatch.ACCEPT_TIMEOUT_SECONDS,
        max_attempts=dispatch.MAX_ATTEMPTS,
        radius_km=dispatch.SEARCH_RADIUS_KM,
    )
    service = DispatchService(coordinator, store, trips)

    return DispatchEngine(
        signals=signals,
        store=store,
        trips=trips,
        index=index,
        waiter=waiter,
        coordinator=coordinator,
        service=service,
        notifier=notifier,
    )


async def run_workers(
    settings: Optional[Settings] = None,
    init_infra: bool = True,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Запускает DispatchWorker и ExpirySweeper до сигнала остановки.

    Args:
        settings: Настройки (по умолчанию глобальные)
        init_infra: Инициализировать ли подключения (БД, Redis, RabbitMQ)
        stop_event: Событие остановки; без него работа идёт до отмены задачи
    """
    if settings is None:
        from ride_dispatch.config import settings as global_settings
        settings = global_settings

    use_postgres = settings.dispatch.STORE_BACKEND == "postgres"
    use_redis = settings.redis.REDIS_ENABLED

    await log_info("Запуск воркеров диспетчеризации...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        if use_postgres:
            await init_db()
        if use_redis:
            await init_redis()
        await init_event_bus()

    event_bus = get_event_bus()
    engine = build_engine(
        settings,
        db=get_db() if use_postgres else None,
        event_bus=event_bus,
    )

    relay: Optional[RedisSignalRelay] = None
    if use_redis and get_redis().is_connected:
        relay = RedisSignalRelay(get_redis(), engine.signals)

    workers: List[BaseWorker] = [
        DispatchWorker(engine.service, engine.signals, event_bus),
    ]
    sweeper = ExpirySweeper(engine.store, settings.dispatch.EXPIRY_SWEEP_INTERVAL_SECONDS)

    try:
        if relay is not None:
            await relay.start()
        for worker in workers:
            await worker.start()
        await sweeper.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        if stop_event is not None:
            await stop_event.wait()
        else:
            await asyncio.Event().wait()

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        await sweeper.stop()
        for worker in workers:
            await worker.stop()
        await engine.service.shutdown()
        if relay is not None:
            await relay.stop()
        engine.signals.close()

        if init_infra:
            await close_event_bus()
            if use_redis:
                await close_redis()
            if use_postgres:
                await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)
