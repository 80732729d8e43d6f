# ride_dispatch/core/notifications/notifier.py
"""
Уведомления водителей о предложениях.

Доставка по принципу best-effort: ошибка публикации логируется и не
прерывает диспетчеризацию, водитель всё равно увидит предложение в
списке ожидающих.
"""

from __future__ import annotations

from typing import Any

from ride_dispatch.common.logger import log_warning
from ride_dispatch.core.dispatch.models import BookingRequest, Trip
from ride_dispatch.infra.event_bus import DomainEvent, EventBus, EventTypes


class DriverNotifier:
    """Публикует события о предложениях в шину событий."""

    def __init__(self, event_bus: EventBus | None) -> None:
        self._event_bus = event_bus

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        if self._event_bus is None:
            return False
        try:
            await self._event_bus.publish(DomainEvent(event_type=event_type, payload=payload))
            return True
        except Exception as e:
            await log_warning(
                f"Не удалось отправить уведомление {event_type}: {e}",
                extra={"payload": payload},
            )
            return False

    async def request_created(self, request: BookingRequest, trip: Trip | None = None) -> bool:
        """Новое предложение водителю."""
        payload: dict[str, Any] = {
            "request_id": request.id,
            "trip_id": request.trip_id,
            "driver_id": request.driver_id,
            "expires_at": request.expires_at.isoformat(),
        }
        if trip is not None:
            payload.update(
                pickup_address=trip.pickup_address,
                destination_address=trip.destination_address,
                total_price=trip.total_price,
            )
        return await self._publish(EventTypes.BOOKING_REQUEST_CREATED, payload)

    async def request_resolved(self, request: BookingRequest) -> bool:
        """Предложение завершено (принято, отклонено или истекло)."""
        return await self._publish(
            EventTypes.BOOKING_REQUEST_RESOLVED,
            {
                "request_id": request.id,
                "trip_id": request.trip_id,
                "driver_id": request.driver_id,
                "status": request.status.value,
            },
        )

    async def trip_event(self, event_type: str, trip_id: int, **payload: Any) -> bool:
        """Событие жизненного цикла поездки."""
        return await self._publish(event_type, {"trip_id": trip_id, **payload})
