"""
Поездки: репозитории, машина состояний и менеджер переходов.
"""

from ride_dispatch.core.trips.repository import InMemoryTripRepository, TripRepository
from ride_dispatch.core.trips.service import TripStateManager
from ride_dispatch.core.trips.state_machine import TripStateMachine

__all__ = [
    "InMemoryTripRepository",
    "TripRepository",
    "TripStateManager",
    "TripStateMachine",
]
