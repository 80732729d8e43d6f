# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import math
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("STORE_BACKEND", "memory")

from ride_dispatch.common.constants import TripStatus  # noqa: E402
from ride_dispatch.core.dispatch.geo_index import EARTH_RADIUS_KM, InMemoryDriverDirectory  # noqa: E402
from ride_dispatch.core.dispatch.models import GeoPoint, Trip  # noqa: E402
from ride_dispatch.core.dispatch.signals import TransitionSignals  # noqa: E402
from ride_dispatch.core.trips.repository import InMemoryTripRepository  # noqa: E402

# Точка подачи во всех сценариях
PICKUP = GeoPoint(5.3600, -4.0083)
REGION = "Abidjan"


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 0")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.namespace = "dispatch"
    redis.make_channel = lambda channel: f"dispatch:{channel}"
    redis.publish_json = AsyncMock(return_value=1)
    redis.is_connected = True
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ВРЕМЯ
# =============================================================================

class FakeClock:
    """Управляемые часы: время двигается только через advance()."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# ДОМЕННЫЕ ФИКСТУРЫ
# =============================================================================

@pytest.fixture
def signals() -> Generator[TransitionSignals, None, None]:
    """Открытый реестр сигналов."""
    registry = TransitionSignals()
    registry.open()
    yield registry
    registry.close()


def make_trip(trip_id: int = 1, **overrides: Any) -> Trip:
    """Создаёт pending-поездку с точкой подачи PICKUP."""
    data: dict[str, Any] = {
        "id": trip_id,
        "client_id": 100,
        "status": TripStatus.PENDING,
        "region": REGION,
        "pickup_latitude": PICKUP.latitude,
        "pickup_longitude": PICKUP.longitude,
        "pickup_address": "Plateau, Avenue Chardy",
        "destination_latitude": 5.2539,
        "destination_longitude": -3.9263,
        "destination_address": "Aéroport FHB",
        "estimated_distance": 14.2,
        "estimated_duration": 25,
        "base_price": 3000,
        "total_price": 4500,
    }
    data.update(overrides)
    return Trip(**data)


@pytest.fixture
def trip_factory() -> Callable[..., Trip]:
    return make_trip


@pytest.fixture
def trip_repository() -> InMemoryTripRepository:
    """Репозиторий с одной pending-поездкой id=1."""
    return InMemoryTripRepository([make_trip()])


def point_north(km: float, origin: GeoPoint = PICKUP) -> GeoPoint:
    """Точка ровно в km к северу от origin (по дуге большого круга)."""
    return GeoPoint(origin.latitude + math.degrees(km / EARTH_RADIUS_KM), origin.longitude)


def driver_at(driver_id: int, km: float, **overrides: Any) -> dict[str, Any]:
    """Запись справочника: водитель в km к северу от точки подачи."""
    point = point_north(km)
    return {
        "driver_id": driver_id,
        "region": REGION,
        "latitude": point.latitude,
        "longitude": point.longitude,
        **overrides,
    }


@pytest.fixture
def driver_factory() -> Callable[..., dict[str, Any]]:
    return driver_at


@pytest.fixture
def three_drivers() -> InMemoryDriverDirectory:
    """Водители 11, 12, 13 на 1.2, 3.4 и 5.0 км."""
    return InMemoryDriverDirectory([
        driver_at(11, 1.2),
        driver_at(12, 3.4),
        driver_at(13, 5.0),
    ])
