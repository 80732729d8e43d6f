# ride_dispatch/core/dispatch/geo_index.py
"""
Поиск доступных водителей рядом с точкой подачи.

Справочник водителей отдаёт уже отфильтрованных (online, approved, active)
водителей региона; точное расстояние по дуге большого круга считается здесь.
"""

from __future__ import annotations

import math
from typing import Any, Protocol

from ride_dispatch.common.constants import AccountStatus, VerificationStatus
from ride_dispatch.common.exceptions import ValidationError
from ride_dispatch.common.logger import log_debug
from ride_dispatch.core.dispatch.models import DriverCandidate, GeoPoint
from ride_dispatch.infra.database import DatabaseManager

EARTH_RADIUS_KM = 6371.0

# Километров в одном градусе широты
_KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180

# Запас рамки предварительного отбора в SQL
_BOX_MARGIN = 1.05

# Погрешность вычислений с плавающей точкой на границе радиуса
_DISTANCE_EPSILON_KM = 1e-9


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """
    Вычисляет расстояние между двумя точками (в км) по формуле Haversine.
    """
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)

    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) *
         math.sin(dlon / 2) ** 2)

    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def validate_point(point: GeoPoint | None, label: str = "pickup") -> GeoPoint:
    """Проверяет, что координаты заданы и лежат в допустимых пределах."""
    if point is None or point.latitude is None or point.longitude is None:
        raise ValidationError(f"Не заданы координаты {label}")
    if not -90.0 <= point.latitude <= 90.0:
        raise ValidationError(f"Широта {label} вне диапазона: {point.latitude}")
    if not -180.0 <= point.longitude <= 180.0:
        raise ValidationError(f"Долгота {label} вне диапазона: {point.longitude}")
    return point


class DriverDirectory(Protocol):
    """Справочник водителей."""

    async def query(self, pickup: GeoPoint, region: str, radius_km: float) -> list[dict[str, Any]]:
        """
        Возвращает водителей региона, которые online, approved и active.
        Каждая запись: driver_id, latitude, longitude, rating, name.
        """
        ...


class PostgresDriverDirectory:
    """Справочник водителей поверх таблиц drivers/users."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def query(self, pickup: GeoPoint, region: str, radius_km: float) -> list[dict[str, Any]]:
        # Грубая рамка по координатам, точное расстояние считает индекс
        lat_delta = radius_km * _BOX_MARGIN / _KM_PER_DEGREE
        cos_lat = max(math.cos(math.radians(pickup.latitude)), 0.01)
        lng_delta = radius_km * _BOX_MARGIN / (_KM_PER_DEGREE * cos_lat)

        rows = await self._db.fetch(
            """
            SELECT d.user_id AS driver_id,
                   d.current_latitude::float8 AS latitude,
                   d.current_longitude::float8 AS longitude,
                   d.rating::float8 AS rating,
                   u.full_name AS name
            FROM drivers d
            JOIN users u ON d.user_id = u.id
            WHERE d.region = $1
              AND d.verification_status = 'approved'
              AND d.is_online = true
              AND u.status = 'active'
              AND d.current_latitude IS NOT NULL
              AND d.current_longitude IS NOT NULL
              AND d.current_latitude BETWEEN $2 AND $3
              AND d.current_longitude BETWEEN $4 AND $5
            """,
            region,
            pickup.latitude - lat_delta,
            pickup.latitude + lat_delta,
            pickup.longitude - lng_delta,
            pickup.longitude + lng_delta,
        )
        return [dict(row) for row in rows]


class InMemoryDriverDirectory:
    """
    Справочник водителей в памяти процесса (режим STORE_BACKEND=memory и тесты).
    Записи содержат те же поля, что и таблица drivers + users.status.
    """

    def __init__(self, drivers: list[dict[str, Any]] | None = None) -> None:
        self._drivers: dict[int, dict[str, Any]] = {}
        for driver in drivers or []:
            self.upsert(driver)

    def upsert(self, driver: dict[str, Any]) -> None:
        record = {
            "is_online": True,
            "verification_status": "approved",
            "account_status": "active",
            "rating": 5.0,
            "name": None,
            **driver,
        }
        self._drivers[int(record["driver_id"])] = record

    def set_online(self, driver_id: int, online: bool) -> None:
        self._drivers[driver_id]["is_online"] = online

    async def query(self, pickup: GeoPoint, region: str, radius_km: float) -> list[dict[str, Any]]:
        return [
            {
                "driver_id": d["driver_id"],
                "latitude": d.get("latitude"),
                "longitude": d.get("longitude"),
                "rating": d["rating"],
                "name": d["name"],
            }
            for d in self._drivers.values()
            if d.get("region") == region
            and d["is_online"]
            and d["verification_status"] == VerificationStatus.APPROVED.value
            and d["account_status"] == AccountStatus.ACTIVE.value
        ]


class GeoDriverIndex:
    """
    Индекс доступных водителей.

    nearest_available() не имеет побочных эффектов: только читает справочник.
    """

    def __init__(self, directory: DriverDirectory) -> None:
        self._directory = directory

    async def nearest_available(
        self,
        pickup: GeoPoint | None,
        region: str,
        radius_km: float,
    ) -> list[DriverCandidate]:
        """
        Ищет водителей в радиусе от точки подачи.

        Args:
            pickup: Точка подачи
            region: Регион поездки
            radius_km: Радиус поиска в км

        Returns:
            Кандидаты по возрастанию расстояния (при равенстве по driver_id)

        Raises:
            ValidationError: нет координат, пустой регион или радиус <= 0
        """
        pickup = validate_point(pickup)
        if not region:
            raise ValidationError("Не задан регион поездки")
        if radius_km <= 0:
            raise ValidationError(f"Радиус поиска должен быть положительным: {radius_km}")

        rows = await self._directory.query(pickup, region, radius_km)

        ranked: list[tuple[float, int, DriverCandidate]] = []
        for row in rows:
            if row.get("latitude") is None or row.get("longitude") is None:
                continue
            distance = haversine_km(pickup, GeoPoint(float(row["latitude"]), float(row["longitude"])))
            if distance > radius_km + _DISTANCE_EPSILON_KM:
                continue
            rating = row.get("rating")
            driver_id = int(row["driver_id"])
            ranked.append((distance, driver_id, DriverCandidate(
                driver_id=driver_id,
                distance_km=round(distance, 3),
                rating=float(rating) if rating is not None else 5.0,
                name=row.get("name"),
            )))

        # Порядок по точному расстоянию, округляется только отдаваемое значение
        ranked.sort(key=lambda item: (item[0], item[1]))
        candidates = [candidate for _, _, candidate in ranked]

        await log_debug(
            f"Найдено {len(candidates)} водителей в радиусе {radius_km} км (регион {region})"
        )
        return candidates
