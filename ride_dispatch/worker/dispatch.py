# ride_dispatch/worker/dispatch.py
"""
Воркер диспетчеризации.
"""

from __future__ import annotations

from typing import Any, List, Optional

from ride_dispatch.common.constants import TypeMsg
from ride_dispatch.common.logger import log_error, log_info
from ride_dispatch.core.dispatch.service import DispatchService
from ride_dispatch.core.dispatch.signals import TransitionSignals
from ride_dispatch.infra.event_bus import DomainEvent, EventBus, EventTypes
from ride_dispatch.worker.base import BaseWorker


def _trip_id(payload: dict[str, Any]) -> Optional[int]:
    raw = payload.get("trip_id") or payload.get("tripId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class DispatchWorker(BaseWorker):
    """
    Запускает поиск водителя на TRIP_CREATED и прерывает его на TRIP_CANCELLED.
    """

    def __init__(
        self,
        service: DispatchService,
        signals: TransitionSignals,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        super().__init__(event_bus)
        self._service = service
        self._signals = signals

    @property
    def name(self) -> str:
        return "DispatchWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [
            EventTypes.TRIP_CREATED,
            EventTypes.TRIP_CANCELLED,
        ]

    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает событие."""
        trip_id = _trip_id(event.payload)
        if trip_id is None:
            await log_error(
                f"Нет trip_id в событии {event.event_type}",
                extra={"payload": event.payload},
            )
            return

        if event.event_type == EventTypes.TRIP_CREATED:
            await log_info(f"Начинаем поиск водителя для поездки {trip_id}", type_msg=TypeMsg.INFO)
            self._service.start_dispatch(trip_id)
        elif event.event_type == EventTypes.TRIP_CANCELLED:
            # Поездка уже отменена в хранилище: будим ожидание, оно вернёт cancelled
            self._signals.wake_trip(trip_id)
