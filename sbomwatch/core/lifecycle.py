from enum import Enum
from typing import Optional

from sbomwatch.core.entities import AlertState


class AlertEvent(Enum):
    CONFIRM = "confirm"
    RESOLVE = "resolve"


# resolved is terminal: it has no outgoing transitions
TRANSITIONS = {
    (AlertState.NEW, AlertEvent.CONFIRM): AlertState.ACTIVE,
    (AlertState.ACTIVE, AlertEvent.CONFIRM): AlertState.ACTIVE,
    (AlertState.NEW, AlertEvent.RESOLVE): AlertState.RESOLVED,
    (AlertState.ACTIVE, AlertEvent.RESOLVE): AlertState.RESOLVED,
}


def next_state(state: AlertState, event: AlertEvent) -> Optional[AlertState]:
    """Target state, or None when the event does not apply to state"""
    return TRANSITIONS.get((state, event))
