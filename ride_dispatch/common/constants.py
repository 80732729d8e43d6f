# ride_dispatch/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class TripStatus(str, Enum):
    """Статусы поездки."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    WAITING_FOR_PICKUP = "waiting_for_pickup"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class BookingRequestStatus(str, Enum):
    """Статусы предложения поездки водителю."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"

    def __str__(self) -> str:
        return self.value


class DispatchOutcome(str, Enum):
    """Итог диспетчеризации поездки."""
    ASSIGNED = "assigned"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class DispatchReason:
    """Коды причин неуспешной диспетчеризации."""
    NO_DRIVERS_IN_AREA = "no_drivers_in_area"
    NO_DRIVER_ACCEPTED = "no_driver_accepted"
    TRIP_CANCELLED = "trip_cancelled"


class VerificationStatus(str, Enum):
    """Статусы верификации водителя."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class AccountStatus(str, Enum):
    """Статусы аккаунта пользователя."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


# Статусы, из которых предложение уже не может выйти
TERMINAL_REQUEST_STATUSES = frozenset({
    BookingRequestStatus.ACCEPTED,
    BookingRequestStatus.REJECTED,
    BookingRequestStatus.EXPIRED,
})
