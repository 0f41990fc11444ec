"""Position model and lifecycle state machine."""

from strangler.models.position import Adjustment, Position
from strangler.models.state_machine import (
    InvalidTransitionError,
    PositionState,
    StateMachine,
    StateTransition,
)

__all__ = [
    "Adjustment",
    "Position",
    "PositionState",
    "StateMachine",
    "StateTransition",
    "InvalidTransitionError",
]
