# ride_dispatch/core/dispatch/models.py
"""
Модели данных диспетчеризации.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ride_dispatch.common.constants import (
    BookingRequestStatus,
    DispatchOutcome,
    DispatchReason,
    TERMINAL_REQUEST_STATUSES,
    TripStatus,
)


def utc_now() -> datetime:
    """Текущее время в UTC (aware)."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GeoPoint:
    """Точка на карте."""
    latitude: float
    longitude: float


class Trip(BaseModel):
    """Модель поездки."""

    id: int = Field(..., description="ID поездки")
    client_id: int = Field(..., description="ID клиента")
    driver_id: Optional[int] = Field(None, description="ID водителя (user_id)")
    status: TripStatus = Field(TripStatus.PENDING, description="Статус поездки")
    region: str = Field(..., description="Регион")

    # Локации
    pickup_latitude: Optional[float] = Field(None, description="Широта подачи")
    pickup_longitude: Optional[float] = Field(None, description="Долгота подачи")
    pickup_address: Optional[str] = Field(None, description="Адрес подачи")
    destination_latitude: Optional[float] = Field(None, description="Широта назначения")
    destination_longitude: Optional[float] = Field(None, description="Долгота назначения")
    destination_address: Optional[str] = Field(None, description="Адрес назначения")

    # Расчёты
    estimated_distance: Optional[float] = Field(None, description="Оценка расстояния, км")
    estimated_duration: Optional[int] = Field(None, description="Оценка времени, мин")
    base_price: int = Field(0, ge=0)
    total_price: int = Field(0, ge=0)
    final_price: Optional[int] = None

    # Код подтверждения посадки
    otp_code: Optional[str] = None
    otp_verified: bool = False
    otp_verified_at: Optional[datetime] = None

    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        from_attributes = True

    @property
    def pickup(self) -> Optional[GeoPoint]:
        """Точка подачи или None, если координаты не заданы."""
        if self.pickup_latitude is None or self.pickup_longitude is None:
            return None
        return GeoPoint(self.pickup_latitude, self.pickup_longitude)

    @property
    def destination(self) -> Optional[GeoPoint]:
        if self.destination_latitude is None or self.destination_longitude is None:
            return None
        return GeoPoint(self.destination_latitude, self.destination_longitude)

    @property
    def is_cancelled(self) -> bool:
        return self.status == TripStatus.CANCELLED


class BookingRequest(BaseModel):
    """Предложение поездки конкретному водителю с ограниченным сроком."""

    id: int
    trip_id: int
    driver_id: int
    status: BookingRequestStatus = BookingRequestStatus.PENDING
    rejection_reason: Optional[str] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        """Предложение уже вышло из pending."""
        return self.status in TERMINAL_REQUEST_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        """Срок ответа истёк (now >= expires_at)."""
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Краткий ответ на accept/reject."""
        return {"requestId": self.id, "status": self.status.value}


class PendingOffer(BaseModel):
    """Ожидающее ответа предложение вместе со сводкой поездки."""

    request_id: int
    trip_id: int
    expires_at: datetime
    created_at: datetime
    pickup_address: Optional[str] = None
    destination_address: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    destination_latitude: Optional[float] = None
    destination_longitude: Optional[float] = None
    total_price: int = 0
    estimated_distance: Optional[float] = None
    estimated_duration: Optional[int] = None


@dataclass
class DriverCandidate:
    """Кандидат водителя для поездки."""
    driver_id: int
    distance_km: float
    rating: float = 5.0
    name: Optional[str] = None


class WaitResult(str, Enum):
    """Чем закончилось ожидание ответа водителя."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def from_status(cls, status: BookingRequestStatus) -> "WaitResult":
        return cls(status.value)


@dataclass
class DispatchResult:
    """Итог одного вызова dispatch()."""
    outcome: DispatchOutcome
    driver_id: Optional[int] = None
    reason: Optional[str] = None
    attempts: int = 0
    request_ids: list[int] = field(default_factory=list)
    driver: Optional[DriverCandidate] = None

    @property
    def assigned(self) -> bool:
        return self.outcome == DispatchOutcome.ASSIGNED

    @property
    def success(self) -> bool:
        return self.assigned

    @property
    def message(self) -> str:
        if self.assigned:
            return "Driver assigned successfully"
        if self.outcome == DispatchOutcome.CANCELLED:
            return "Trip was cancelled during dispatch"
        if self.reason == DispatchReason.NO_DRIVERS_IN_AREA:
            return "No drivers available in your area"
        return "Unable to find available driver. Please try again."

    def to_dict(self) -> dict[str, Any]:
        """Ответ для внешнего транспорта."""
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.driver_id is not None:
            data["driverId"] = self.driver_id
        if self.driver is not None:
            data.update(
                driverName=self.driver.name,
                driverRating=self.driver.rating,
                distance=self.driver.distance_km,
            )
        if self.reason is not None:
            data["reason"] = self.reason
        return data
