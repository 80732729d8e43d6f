# ride_dispatch/core/trips/repository.py
"""
Репозитории поездок.

Все изменения статуса условные: обновление проходит, только если поездка
сейчас в одном из ожидаемых статусов. Иначе возвращается None и решение,
какую ошибку поднимать, остаётся за сервисом.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence

from ride_dispatch.common.constants import TripStatus
from ride_dispatch.core.dispatch.models import Trip, utc_now
from ride_dispatch.infra.database import DatabaseManager

_TRIP_COLUMNS = """
    id, client_id, driver_id, status, region,
    pickup_latitude::float8 AS pickup_latitude,
    pickup_longitude::float8 AS pickup_longitude,
    pickup_address,
    destination_latitude::float8 AS destination_latitude,
    destination_longitude::float8 AS destination_longitude,
    destination_address,
    estimated_distance::float8 AS estimated_distance,
    estimated_duration,
    base_price, total_price, final_price,
    otp_code, otp_verified, otp_verified_at,
    cancellation_reason, completed_at, created_at, updated_at
"""


def _statuses(statuses: Sequence[TripStatus]) -> list[str]:
    return [s.value for s in statuses]


class TripRepository:
    """Репозиторий поездок на PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    @staticmethod
    def _to_trip(row: Any) -> Optional[Trip]:
        return Trip.model_validate(dict(row)) if row else None

    async def get(self, trip_id: int) -> Optional[Trip]:
        row = await self.db.fetchrow(f"SELECT {_TRIP_COLUMNS} FROM trips WHERE id = $1", trip_id)
        return self._to_trip(row)

    async def assign_driver(self, trip_id: int, driver_id: int) -> Optional[Trip]:
        """pending и без водителя → accepted с указанным водителем."""
        row = await self.db.fetchrow(
            f"""
            UPDATE trips SET driver_id = $2, status = 'accepted', updated_at = NOW()
            WHERE id = $1 AND status = 'pending' AND driver_id IS NULL
            RETURNING {_TRIP_COLUMNS}
            """,
            trip_id,
            driver_id,
        )
        return self._to_trip(row)

    async def cancel(self, trip_id: int, reason: str | None, from_statuses: Sequence[TripStatus]) -> Optional[Trip]:
        row = await self.db.fetchrow(
            f"""
            UPDATE trips SET status = 'cancelled', cancellation_reason = $2, updated_at = NOW()
            WHERE id = $1 AND status = ANY($3::text[])
            RETURNING {_TRIP_COLUMNS}
            """,
            trip_id,
            reason,
            _statuses(from_statuses),
        )
        return self._to_trip(row)

    async def set_otp(self, trip_id: int, otp_code: str) -> Optional[Trip]:
        row = await self.db.fetchrow(
            f"""
            UPDATE trips SET otp_code = $2, otp_verified = false, updated_at = NOW()
            WHERE id = $1
            RETURNING {_TRIP_COLUMNS}
            """,
            trip_id,
            otp_code,
        )
        return self._to_trip(row)

    async def start(
        self,
        trip_id: int,
        driver_id: int,
        otp_code: str,
        from_statuses: Sequence[TripStatus],
    ) -> Optional[Trip]:
        row = await self.db.fetchrow(
            f"""
            UPDATE trips SET status = 'in_progress', otp_verified = true,
                             otp_verified_at = NOW(), updated_at = NOW()
            WHERE id = $1 AND driver_id = $2 AND otp_code = $3 AND status = ANY($4::text[])
            RETURNING {_TRIP_COLUMNS}
            """,
            trip_id,
            driver_id,
            otp_code,
            _statuses(from_statuses),
        )
        return self._to_trip(row)

    async def complete(
        self,
        trip_id: int,
        driver_id: int,
        final_price: int | None,
        actual_distance: float | None,
        actual_duration: int | None,
    ) -> Optional[Trip]:
        row = await self.db.fetchrow(
            f"""
            UPDATE trips SET status = 'completed',
                             final_price = COALESCE($3, total_price),
                             actual_distance = $4,
                             actual_duration = $5,
                             completed_at = NOW(),
                             updated_at = NOW()
            WHERE id = $1 AND driver_id = $2 AND status = 'in_progress'
            RETURNING {_TRIP_COLUMNS}
            """,
            trip_id,
            driver_id,
            final_price,
            actual_distance,
            actual_duration,
        )
        return self._to_trip(row)


class InMemoryTripRepository:
    """Репозиторий поездок в памяти процесса (режим STORE_BACKEND=memory и тесты)."""

    def __init__(self, trips: Sequence[Trip] = ()) -> None:
        self._trips: dict[int, Trip] = {trip.id: trip for trip in trips}

    def add(self, trip: Trip) -> Trip:
        self._trips[trip.id] = trip
        return trip

    def _update(self, trip: Trip, **changes: Any) -> Trip:
        updated = trip.model_copy(update={**changes, "updated_at": utc_now()})
        self._trips[trip.id] = updated
        return updated

    async def get(self, trip_id: int) -> Optional[Trip]:
        return self._trips.get(trip_id)

    async def assign_driver(self, trip_id: int, driver_id: int) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        if trip is None or trip.status != TripStatus.PENDING or trip.driver_id is not None:
            return None
        return self._update(trip, driver_id=driver_id, status=TripStatus.ACCEPTED)

    async def cancel(self, trip_id: int, reason: str | None, from_statuses: Sequence[TripStatus]) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        if trip is None or trip.status not in from_statuses:
            return None
        return self._update(trip, status=TripStatus.CANCELLED, cancellation_reason=reason)

    async def set_otp(self, trip_id: int, otp_code: str) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        if trip is None:
            return None
        return self._update(trip, otp_code=otp_code, otp_verified=False)

    async def start(
        self,
        trip_id: int,
        driver_id: int,
        otp_code: str,
        from_statuses: Sequence[TripStatus],
    ) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        if (
            trip is None
            or trip.driver_id != driver_id
            or trip.otp_code != otp_code
            or trip.status not in from_statuses
        ):
            return None
        now: datetime = utc_now()
        return self._update(trip, status=TripStatus.IN_PROGRESS, otp_verified=True, otp_verified_at=now)

    async def complete(
        self,
        trip_id: int,
        driver_id: int,
        final_price: int | None,
        actual_distance: float | None,
        actual_duration: int | None,
    ) -> Optional[Trip]:
        trip = self._trips.get(trip_id)
        if trip is None or trip.driver_id != driver_id or trip.status != TripStatus.IN_PROGRESS:
            return None
        return self._update(
            trip,
            status=TripStatus.COMPLETED,
            final_price=final_price if final_price is not None else trip.total_price,
            completed_at=utc_now(),
        )
