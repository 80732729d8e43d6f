# ride_dispatch/core/dispatch/request_store.py
"""
Хранилище предложений поездки водителям (booking requests).

Каждый переход выполняется как условное обновление, которое проходит только
если предложение всё ещё в статусе pending. Из одновременных accept, reject и
истечения срока успешно завершается ровно один, остальные получают ConflictError.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from asyncpg import Record

from ride_dispatch.common.constants import BookingRequestStatus, TypeMsg
from ride_dispatch.common.exceptions import ConflictError, NotFoundError
from ride_dispatch.common.logger import log_debug, log_info
from ride_dispatch.core.dispatch.models import BookingRequest, PendingOffer, Trip, utc_now
from ride_dispatch.core.dispatch.signals import TransitionSignals
from ride_dispatch.infra.database import DatabaseManager

Clock = Callable[[], datetime]
TripReader = Callable[[int], Awaitable[Optional[Trip]]]

DEFAULT_REJECTION_REASON = "Driver rejected"


class RequestStore(ABC):
    """Контракт хранилища предложений."""

    def __init__(self, signals: TransitionSignals | None = None, clock: Clock = utc_now) -> None:
        self._signals = signals
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def create(self, trip_id: int, driver_id: int, ttl_seconds: float) -> BookingRequest:
        """
        Создаёт pending-предложение со сроком now + ttl_seconds.

        Raises:
            ConflictError: у поездки уже есть pending-предложение
        """

    @abstractmethod
    async def get(self, request_id: int) -> BookingRequest:
        """Raises NotFoundError."""

    @abstractmethod
    async def accept(self, request_id: int, driver_id: int, now: datetime | None = None) -> BookingRequest:
        """pending → accepted, если водитель совпадает и now < expires_at."""

    @abstractmethod
    async def reject(
        self,
        request_id: int,
        driver_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> BookingRequest:
        """pending → rejected, если водитель совпадает."""

    @abstractmethod
    async def expire(self, request_id: int, now: datetime | None = None) -> bool:
        """
        pending → expired, если срок истёк.
        Для уже завершённого предложения ничего не делает и возвращает False.
        """

    @abstractmethod
    async def expire_overdue(self, now: datetime | None = None) -> list[int]:
        """Переводит все просроченные pending-предложения в expired. Возвращает их id."""

    @abstractmethod
    async def void(self, request_id: int) -> bool:
        """pending → expired независимо от срока (отмена поездки)."""

    @abstractmethod
    async def list_pending(self, driver_id: int, now: datetime | None = None) -> list[PendingOffer]:
        """Непросроченные pending-предложения водителя, новые первыми."""

    @abstractmethod
    async def list_for_trip(self, trip_id: int) -> list[BookingRequest]:
        """Все предложения по поездке в порядке создания."""

    async def _after_transition(self, request: BookingRequest) -> None:
        """Будит ожидающих после успешного перехода."""
        await log_info(
            f"Предложение {request.id} (поездка {request.trip_id}, водитель {request.driver_id}) → {request.status}",
            type_msg=TypeMsg.INFO,
        )
        if self._signals is not None:
            await self._signals.notify_request(request.id, request.status.value)

    @staticmethod
    def _conflict(current: BookingRequest, driver_id: int, now: datetime, action: str) -> ConflictError:
        """Объясняет, почему условный переход не прошёл."""
        if current.driver_id != driver_id:
            return ConflictError(f"Предложение {current.id} адресовано другому водителю")
        if current.is_terminal:
            return ConflictError(f"Нельзя {action} предложение {current.id}: статус уже {current.status}")
        if current.is_overdue(now):
            return ConflictError(f"Нельзя {action} предложение {current.id}: срок ответа истёк")
        return ConflictError(f"Нельзя {action} предложение {current.id}")


# =============================================================================
# POSTGRES
# =============================================================================

def _row_to_request(row: Record) -> BookingRequest:
    return BookingRequest.model_validate(dict(row))


class PostgresRequestStore(RequestStore):
    """
    Хранилище на PostgreSQL.

    Атомарность обеспечивает сам UPDATE ... WHERE status = 'pending':
    строка блокируется на время обновления, второй конкурент видит уже
    изменённый статус и не обновляет ничего.
    """

    def __init__(
        self,
        db: DatabaseManager,
        signals: TransitionSignals | None = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(signals, clock)
        self._db = db

    async def create(self, trip_id: int, driver_id: int, ttl_seconds: float) -> BookingRequest:
        now = self.now()
        row = await self._db.fetchrow(
            """
            INSERT INTO booking_requests (trip_id, driver_id, status, expires_at, created_at)
            VALUES ($1, $2, 'pending', $3, $4)
            RETURNING *
            """,
            trip_id,
            driver_id,
            now + timedelta(seconds=ttl_seconds),
            now,
        )
        request = _row_to_request(row)
        await log_debug(f"Создано предложение {request.id} для поездки {trip_id}, водитель {driver_id}")
        return request

    async def get(self, request_id: int) -> BookingRequest:
        row = await self._db.fetchrow("SELECT * FROM booking_requests WHERE id = $1", request_id)
        if row is None:
            raise NotFoundError(f"Предложение {request_id} не найдено")
        return _row_to_request(row)

    async def accept(self, request_id: int, driver_id: int, now: datetime | None = None) -> BookingRequest:
        now = now or self.now()
        row = await self._db.fetchrow(
            """
            UPDATE booking_requests
            SET status = 'accepted', accepted_at = $3
            WHERE id = $1 AND driver_id = $2 AND status = 'pending' AND expires_at > $3
            RETURNING *
            """,
            request_id,
            driver_id,
            now,
        )
        if row is None:
            raise self._conflict(await self.get(request_id), driver_id, now, "принять")

        request = _row_to_request(row)
        await self._after_transition(request)
        return request

    async def reject(
        self,
        request_id: int,
        driver_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> BookingRequest:
        now = now or self.now()
        row = await self._db.fetchrow(
            """
            UPDATE booking_requests
            SET status = 'rejected', rejection_reason = $3, rejected_at = $4
            WHERE id = $1 AND driver_id = $2 AND status = 'pending'
            RETURNING *
            """,
            request_id,
            driver_id,
            reason or DEFAULT_REJECTION_REASON,
            now,
        )
        if row is None:
            raise self._conflict(await self.get(request_id), driver_id, now, "отклонить")

        request = _row_to_request(row)
        await self._after_transition(request)
        return request

    async def expire(self, request_id: int, now: datetime | None = None) -> bool:
        row = await self._db.fetchrow(
            """
            UPDATE booking_requests
            SET status = 'expired'
            WHERE id = $1 AND status = 'pending' AND expires_at <= $2
            RETURNING *
            """,
            request_id,
            now or self.now(),
        )
        if row is None:
            return False
        await self._after_transition(_row_to_request(row))
        return True

    async def expire_overdue(self, now: datetime | None = None) -> list[int]:
        rows = await self._db.fetch(
            """
            UPDATE booking_requests
            SET status = 'expired'
            WHERE status = 'pending' AND expires_at <= $1
            RETURNING *
            """,
            now or self.now(),
        )
        for row in rows:
            await self._after_transition(_row_to_request(row))
        return [row["id"] for row in rows]

    async def void(self, request_id: int) -> bool:
        row = await self._db.fetchrow(
            """
            UPDATE booking_requests
            SET status = 'expired'
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            request_id,
        )
        if row is None:
            return False
        await self._after_transition(_row_to_request(row))
        return True

    async def list_pending(self, driver_id: int, now: datetime | None = None) -> list[PendingOffer]:
        rows = await self._db.fetch(
            """
            SELECT br.id AS request_id, br.trip_id, br.expires_at, br.created_at,
                   t.pickup_address, t.destination_address, t.total_price,
                   t.pickup_latitude::float8 AS pickup_latitude,
                   t.pickup_longitude::float8 AS pickup_longitude,
                   t.destination_latitude::float8 AS destination_latitude,
                   t.destination_longitude::float8 AS destination_longitude,
                   t.estimated_distance::float8 AS estimated_distance,
                   t.estimated_duration
            FROM booking_requests br
            JOIN trips t ON br.trip_id = t.id
            WHERE br.driver_id = $1 AND br.status = 'pending' AND br.expires_at > $2
            ORDER BY br.created_at DESC, br.id DESC
            """,
            driver_id,
            now or self.now(),
        )
        return [PendingOffer.model_validate(dict(row)) for row in rows]

    async def list_for_trip(self, trip_id: int) -> list[BookingRequest]:
        rows = await self._db.fetch(
            "SELECT * FROM booking_requests WHERE trip_id = $1 ORDER BY id",
            trip_id,
        )
        return [_row_to_request(row) for row in rows]


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryRequestStore(RequestStore):
    """
    Хранилище в памяти процесса.

    Проверка и запись каждого перехода выполняются без точек переключения
    (await), поэтому на одном event loop они атомарны.
    """

    def __init__(
        self,
        signals: TransitionSignals | None = None,
        clock: Clock = utc_now,
        trip_reader: TripReader | None = None,
    ) -> None:
        super().__init__(signals, clock)
        self._trip_reader = trip_reader
        self._requests: dict[int, BookingRequest] = {}
        self._ids = itertools.count(1)

    def _require(self, request_id: int) -> BookingRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Предложение {request_id} не найдено")
        return request

    def _update(self, request: BookingRequest, **changes: Any) -> BookingRequest:
        updated = request.model_copy(update=changes)
        self._requests[request.id] = updated
        return updated

    async def create(self, trip_id: int, driver_id: int, ttl_seconds: float) -> BookingRequest:
        for existing in self._requests.values():
            if existing.trip_id == trip_id and existing.status == BookingRequestStatus.PENDING:
                raise ConflictError(f"У поездки {trip_id} уже есть ожидающее предложение {existing.id}")

        now = self.now()
        request = BookingRequest(
            id=next(self._ids),
            trip_id=trip_id,
            driver_id=driver_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        self._requests[request.id] = request
        await log_debug(f"Создано предложение {request.id} для поездки {trip_id}, водитель {driver_id}")
        return request

    async def get(self, request_id: int) -> BookingRequest:
        return self._require(request_id)

    async def accept(self, request_id: int, driver_id: int, now: datetime | None = None) -> BookingRequest:
        now = now or self.now()
        current = self._require(request_id)
        if (
            current.status != BookingRequestStatus.PENDING
            or current.driver_id != driver_id
            or current.is_overdue(now)
        ):
            raise self._conflict(current, driver_id, now, "принять")

        request = self._update(current, status=BookingRequestStatus.ACCEPTED, accepted_at=now)
        await self._after_transition(request)
        return request

    async def reject(
        self,
        request_id: int,
        driver_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> BookingRequest:
        now = now or self.now()
        current = self._require(request_id)
        if current.status != BookingRequestStatus.PENDING or current.driver_id != driver_id:
            raise self._conflict(current, driver_id, now, "отклонить")

        request = self._update(
            current,
            status=BookingRequestStatus.REJECTED,
            rejection_reason=reason or DEFAULT_REJECTION_REASON,
            rejected_at=now,
        )
        await self._after_transition(request)
        return request

    async def expire(self, request_id: int, now: datetime | None = None) -> bool:
        now = now or self.now()
        current = self._requests.get(request_id)
        if current is None or current.status != BookingRequestStatus.PENDING or not current.is_overdue(now):
            return False

        request = self._update(current, status=BookingRequestStatus.EXPIRED)
        await self._after_transition(request)
        return True

    async def expire_overdue(self, now: datetime | None = None) -> list[int]:
        now = now or self.now()
        expired = [
            self._update(request, status=BookingRequestStatus.EXPIRED)
            for request in list(self._requests.values())
            if request.status == BookingRequestStatus.PENDING and request.is_overdue(now)
        ]
        for request in expired:
            await self._after_transition(request)
        return [request.id for request in expired]

    async def void(self, request_id: int) -> bool:
        current = self._requests.get(request_id)
        if current is None or current.status != BookingRequestStatus.PENDING:
            return False

        request = self._update(current, status=BookingRequestStatus.EXPIRED)
        await self._after_transition(request)
        return True

    async def list_pending(self, driver_id: int, now: datetime | None = None) -> list[PendingOffer]:
        now = now or self.now()
        pending = sorted(
            (
                r for r in self._requests.values()
                if r.driver_id == driver_id
                and r.status == BookingRequestStatus.PENDING
                and not r.is_overdue(now)
            ),
            key=lambda r: (r.created_at, r.id),
            reverse=True,
        )

        offers: list[PendingOffer] = []
        for request in pending:
            trip = await self._trip_reader(request.trip_id) if self._trip_reader else None
            offers.append(_make_offer(request, trip))
        return offers

    async def list_for_trip(self, trip_id: int) -> list[BookingRequest]:
        return sorted(
            (r for r in self._requests.values() if r.trip_id == trip_id),
            key=lambda r: r.id,
        )


def _make_offer(request: BookingRequest, trip: Trip | None) -> PendingOffer:
    offer: dict[str, Any] = {
        "request_id": request.id,
        "trip_id": request.trip_id,
        "expires_at": request.expires_at,
        "created_at": request.created_at,
    }
    if trip is not None:
        offer.update(
            pickup_address=trip.pickup_address,
            destination_address=trip.destination_address,
            pickup_latitude=trip.pickup_latitude,
            pickup_longitude=trip.pickup_longitude,
            destination_latitude=trip.destination_latitude,
            destination_longitude=trip.destination_longitude,
            total_price=trip.total_price,
            estimated_distance=trip.estimated_distance,
            estimated_duration=trip.estimated_duration,
        )
    return PendingOffer(**offer)
