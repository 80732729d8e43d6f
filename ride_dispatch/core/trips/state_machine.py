# ride_dispatch/core/trips/state_machine.py
from ride_dispatch.common.constants import TripStatus


class TripStateMachine:
    ALLOWED_TRANSITIONS = {
        TripStatus.PENDING: [TripStatus.ACCEPTED, TripStatus.CANCELLED],
        TripStatus.ACCEPTED: [TripStatus.WAITING_FOR_PICKUP, TripStatus.IN_PROGRESS, TripStatus.CANCELLED],
        TripStatus.WAITING_FOR_PICKUP: [TripStatus.IN_PROGRESS, TripStatus.CANCELLED],
        TripStatus.IN_PROGRESS: [TripStatus.COMPLETED, TripStatus.CANCELLED],
        TripStatus.COMPLETED: [],
        TripStatus.CANCELLED: [],
    }

    @staticmethod
    def can_transition(current_status: str, new_status: str) -> bool:
        try:
            curr = TripStatus(current_status)
            new = TripStatus(new_status)
            return new in TripStateMachine.ALLOWED_TRANSITIONS.get(curr, [])
        except ValueError:
            return False

    @staticmethod
    def sources_for(new_status: TripStatus) -> list[TripStatus]:
        """Статусы, из которых допустим переход в new_status."""
        return [
            status for status, targets in TripStateMachine.ALLOWED_TRANSITIONS.items()
            if new_status in targets
        ]
