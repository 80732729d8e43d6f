# tests/core/test_trips_repository.py
"""
Тесты SQL-репозитория поездок (DatabaseManager замокан).
"""

from __future__ import annotations

from typing import Any

import pytest

from ride_dispatch.common.constants import TripStatus
from ride_dispatch.core.trips.repository import TripRepository


def _trip_row(trip_factory, **overrides: Any) -> dict[str, Any]:
    return trip_factory(**overrides).model_dump()


@pytest.fixture
def repository(mock_db) -> TripRepository:
    return TripRepository(mock_db)


class TestTripRepository:
    """Тесты для TripRepository."""

    @pytest.mark.asyncio
    async def test_get(self, repository: TripRepository, mock_db, trip_factory) -> None:
        mock_db.fetchrow.return_value = _trip_row(trip_factory)

        trip = await repository.get(1)

        assert trip.id == 1
        assert trip.pickup_address == "Plateau, Avenue Chardy"
        assert mock_db.fetchrow.await_args.args[1] == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, repository: TripRepository, mock_db) -> None:
        assert await repository.get(404) is None

    @pytest.mark.asyncio
    async def test_assign_driver_is_conditional(self, repository: TripRepository, mock_db, trip_factory) -> None:
        mock_db.fetchrow.return_value = _trip_row(trip_factory, status=TripStatus.ACCEPTED, driver_id=11)

        trip = await repository.assign_driver(1, 11)

        query, *args = mock_db.fetchrow.await_args.args
        assert "status = 'pending' AND driver_id IS NULL" in query
        assert args == [1, 11]
        assert trip.driver_id == 11

    @pytest.mark.asyncio
    async def test_assign_driver_lost_race(self, repository: TripRepository, mock_db) -> None:
        assert await repository.assign_driver(1, 11) is None

    @pytest.mark.asyncio
    async def test_cancel_passes_source_statuses(self, repository: TripRepository, mock_db, trip_factory) -> None:
        mock_db.fetchrow.return_value = _trip_row(trip_factory, status=TripStatus.CANCELLED)

        await repository.cancel(1, "Передумал", [TripStatus.PENDING, TripStatus.ACCEPTED])

        query, *args = mock_db.fetchrow.await_args.args
        assert "ANY($3::text[])" in query
        assert args == [1, "Передумал", ["pending", "accepted"]]

    @pytest.mark.asyncio
    async def test_start_checks_driver_and_code(self, repository: TripRepository, mock_db) -> None:
        await repository.start(1, 11, "482913", [TripStatus.ACCEPTED])

        query, *args = mock_db.fetchrow.await_args.args
        assert "otp_code = $3" in query
        assert args == [1, 11, "482913", ["accepted"]]

    @pytest.mark.asyncio
    async def test_complete_defaults_final_price(self, repository: TripRepository, mock_db) -> None:
        await repository.complete(1, 11, None, 14.8, 27)

        query, *args = mock_db.fetchrow.await_args.args
        assert "COALESCE($3, total_price)" in query
        assert "status = 'in_progress'" in query
        assert args == [1, 11, None, 14.8, 27]
