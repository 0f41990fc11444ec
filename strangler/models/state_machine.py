"""Position lifecycle state machine.

Every position embeds a StateMachine that only permits transitions declared
in VALID_TRANSITIONS. Management is tiered (first down through fourth down)
as the short strikes come under pressure; Adjusting and Rolling are
in-flight repair states; Closed is terminal.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from strangler.utils.timezone import utc_now


class PositionState(str, Enum):
    """Lifecycle states of a strangle position."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    OPEN = "open"
    FIRST_DOWN = "first_down"
    SECOND_DOWN = "second_down"
    THIRD_DOWN = "third_down"
    FOURTH_DOWN = "fourth_down"
    ADJUSTING = "adjusting"
    ROLLING = "rolling"
    ERROR = "error"
    CLOSED = "closed"


# Transition conditions
CONDITION_ORDER_PLACED = "order_placed"
CONDITION_SKIP_ORDER_ENTRY = "skip_order_entry"
CONDITION_ORDER_FILLED = "order_filled"
CONDITION_ORDER_FAILED = "order_failed"
CONDITION_ORDER_TIMEOUT = "order_timeout"
CONDITION_RECOVERED_POSITION = "recovered_position"
CONDITION_START_MANAGEMENT = "start_management"
CONDITION_POSITION_CLOSED = "position_closed"
CONDITION_STRIKE_CHALLENGED = "strike_challenged"
CONDITION_STRIKE_BREACHED = "strike_breached"
CONDITION_ADJUSTMENT_FAILED = "adjustment_failed"
CONDITION_PRICE_RECOVERED = "price_recovered"
CONDITION_ADJUSTMENT_SUCCESSFUL = "adjustment_successful"
CONDITION_RECOVERY_SUCCESSFUL = "recovery_successful"
CONDITION_PUNT_EXECUTED = "punt_executed"
CONDITION_EXIT_CONDITIONS = "exit_conditions"
CONDITION_HARD_STOP = "hard_stop"
CONDITION_EMERGENCY_EXIT = "emergency_exit"
CONDITION_FORCE_CLOSE = "force_close"
CONDITION_MANUAL_CLOSE = "manual_close"
CONDITION_ROLL_UNTESTED = "roll_untested"
CONDITION_EXECUTE_ADJUSTMENT = "execute_adjustment"
CONDITION_ROLL_AS_PUNT = "roll_as_punt"
CONDITION_ADJUSTMENT_COMPLETE = "adjustment_complete"
CONDITION_ROLL_COMPLETE = "roll_complete"
CONDITION_ROLL_FAILED = "roll_failed"
CONDITION_MANUAL_INTERVENTION = "manual_intervention"

MANAGEMENT_STATES = (
    PositionState.FIRST_DOWN,
    PositionState.SECOND_DOWN,
    PositionState.THIRD_DOWN,
    PositionState.FOURTH_DOWN,
)

TERMINAL_STATES = (PositionState.CLOSED,)


class InvalidTransitionError(Exception):
    """Raised when a transition is undeclared or exceeds a limit."""

    pass


@dataclass(frozen=True)
class StateTransition:
    """A declared (from, to, condition) transition."""

    from_state: PositionState
    to_state: PositionState
    condition: str
    description: str


S = PositionState

VALID_TRANSITIONS: list[StateTransition] = [
    # Position lifecycle
    StateTransition(S.IDLE, S.SUBMITTED, CONDITION_ORDER_PLACED, "Order submitted to broker"),
    StateTransition(S.IDLE, S.FIRST_DOWN, CONDITION_SKIP_ORDER_ENTRY, "Skipping order entry, going directly to management"),
    StateTransition(S.IDLE, S.OPEN, CONDITION_RECOVERED_POSITION, "Untracked broker position recovered"),
    StateTransition(S.SUBMITTED, S.OPEN, CONDITION_ORDER_FILLED, "Order filled successfully"),
    StateTransition(S.SUBMITTED, S.ERROR, CONDITION_ORDER_FAILED, "Order failed or canceled"),
    StateTransition(S.SUBMITTED, S.CLOSED, CONDITION_ORDER_TIMEOUT, "Order timed out without fill"),
    StateTransition(S.OPEN, S.FIRST_DOWN, CONDITION_START_MANAGEMENT, "Begin tiered monitoring"),
    StateTransition(S.OPEN, S.CLOSED, CONDITION_POSITION_CLOSED, "Position closed directly"),
    StateTransition(S.OPEN, S.CLOSED, CONDITION_EXIT_CONDITIONS, "Profit target or time limit reached"),
    # Tier progression
    StateTransition(S.FIRST_DOWN, S.SECOND_DOWN, CONDITION_STRIKE_CHALLENGED, "Price near a short strike"),
    StateTransition(S.SECOND_DOWN, S.THIRD_DOWN, CONDITION_STRIKE_BREACHED, "Price breached a short strike"),
    StateTransition(S.THIRD_DOWN, S.FOURTH_DOWN, CONDITION_ADJUSTMENT_FAILED, "Adjustment attempt failed"),
    # Recovery
    StateTransition(S.SECOND_DOWN, S.FIRST_DOWN, CONDITION_PRICE_RECOVERED, "Price moved away from strike"),
    StateTransition(S.THIRD_DOWN, S.FIRST_DOWN, CONDITION_ADJUSTMENT_SUCCESSFUL, "Successfully adjusted position"),
    StateTransition(S.FOURTH_DOWN, S.FIRST_DOWN, CONDITION_RECOVERY_SUCCESSFUL, "Recovered after critical adjustment"),
    StateTransition(S.FOURTH_DOWN, S.FIRST_DOWN, CONDITION_PUNT_EXECUTED, "Punted in fourth down"),
    # Exits from management
    StateTransition(S.FIRST_DOWN, S.CLOSED, CONDITION_EXIT_CONDITIONS, "Profit target or time limit reached"),
    StateTransition(S.SECOND_DOWN, S.CLOSED, CONDITION_EXIT_CONDITIONS, "Exit conditions met"),
    StateTransition(S.THIRD_DOWN, S.CLOSED, CONDITION_HARD_STOP, "Hard stop triggered"),
    StateTransition(S.FOURTH_DOWN, S.CLOSED, CONDITION_EMERGENCY_EXIT, "Emergency exit required"),
    StateTransition(S.ADJUSTING, S.CLOSED, CONDITION_HARD_STOP, "Hard stop during adjustment"),
    StateTransition(S.ROLLING, S.CLOSED, CONDITION_FORCE_CLOSE, "Force close during roll"),
    # Adjustments
    StateTransition(S.SECOND_DOWN, S.ADJUSTING, CONDITION_ROLL_UNTESTED, "Rolling untested side"),
    StateTransition(S.THIRD_DOWN, S.ADJUSTING, CONDITION_EXECUTE_ADJUSTMENT, "Executing adjustment"),
    StateTransition(S.FOURTH_DOWN, S.ROLLING, CONDITION_ROLL_AS_PUNT, "Rolling to new expiration as punt"),
    StateTransition(S.ADJUSTING, S.FIRST_DOWN, CONDITION_ADJUSTMENT_COMPLETE, "Adjustment completed"),
    StateTransition(S.ROLLING, S.FIRST_DOWN, CONDITION_ROLL_COMPLETE, "Roll completed"),
    StateTransition(S.ADJUSTING, S.ERROR, CONDITION_ADJUSTMENT_FAILED, "Adjustment failed"),
    StateTransition(S.ROLLING, S.ERROR, CONDITION_ROLL_FAILED, "Roll failed"),
    # Error recovery
    StateTransition(S.ERROR, S.IDLE, CONDITION_MANUAL_INTERVENTION, "Manual intervention completed"),
    StateTransition(S.ERROR, S.CLOSED, CONDITION_FORCE_CLOSE, "Force close position"),
]

del S

# from_state -> to_state -> {conditions}
_TRANSITION_LOOKUP: dict[PositionState, dict[PositionState, set[str]]] = defaultdict(
    lambda: defaultdict(set)
)
for _t in VALID_TRANSITIONS:
    _TRANSITION_LOOKUP[_t.from_state][_t.to_state].add(_t.condition)
del _t

_STATE_DESCRIPTIONS = {
    PositionState.IDLE: "No active position, ready for new opportunities",
    PositionState.SUBMITTED: "Order submitted, waiting for broker confirmation",
    PositionState.OPEN: "Position opened, transitioning to management",
    PositionState.FIRST_DOWN: "First Down: position healthy, collecting theta",
    PositionState.SECOND_DOWN: "Second Down: strike challenged, elevated monitoring",
    PositionState.THIRD_DOWN: "Third Down: strike breached, considering adjustments",
    PositionState.FOURTH_DOWN: "Fourth Down: final adjustment attempt or prepare to exit",
    PositionState.ADJUSTING: "Executing position adjustment",
    PositionState.ROLLING: "Rolling to a new expiration",
    PositionState.CLOSED: "Position closed",
    PositionState.ERROR: "Error state - manual intervention required",
}


def is_valid_transition(from_state: PositionState, to_state: PositionState, condition: str) -> bool:
    """Check the declared transition table."""
    return condition in _TRANSITION_LOOKUP.get(from_state, {}).get(to_state, set())


def get_valid_next_states(from_state: PositionState) -> list[PositionState]:
    """States reachable from from_state under any condition."""
    return list(_TRANSITION_LOOKUP.get(from_state, {}).keys())


def is_terminal_state(state: PositionState) -> bool:
    """Closed is the only terminal state."""
    return state in TERMINAL_STATES


class StateMachine:
    """Guards the lifecycle of a single position.

    Example:
        >>> sm = StateMachine()
        >>> sm.transition(PositionState.SUBMITTED, CONDITION_ORDER_PLACED)
        >>> sm.transition(PositionState.OPEN, CONDITION_ORDER_FILLED)
        >>> sm.current_state
        <PositionState.OPEN: 'open'>
    """

    def __init__(
        self,
        initial_state: PositionState = PositionState.IDLE,
        max_adjustments: int = 3,
        max_time_rolls: int = 1,
    ):
        """Initialize the state machine.

        Args:
            initial_state: Starting state (restored records start where they left off)
            max_adjustments: Maximum entries into Adjusting
            max_time_rolls: Maximum entries into Rolling
        """
        self.current_state = PositionState(initial_state)
        self.previous_state = self.current_state
        self.transition_time: datetime = utc_now()
        self.transition_count: dict[PositionState, int] = {}
        if self.current_state != PositionState.IDLE:
            self.transition_count[self.current_state] = 1
        self.max_adjustments = max_adjustments
        self.max_time_rolls = max_time_rolls
        self.fourth_down_start_time: datetime | None = None
        self.punt_count = 0

    def validate_transition(self, to: PositionState, condition: str) -> None:
        """Raise InvalidTransitionError unless the transition is allowed."""
        if not is_valid_transition(self.current_state, to, condition):
            raise InvalidTransitionError(
                f"invalid transition from {self.current_state.value} to {to.value} "
                f"with condition '{condition}'"
            )
        if to == PositionState.ADJUSTING and not self.can_adjust():
            raise InvalidTransitionError(
                f"maximum adjustments ({self.max_adjustments}) exceeded"
            )
        if to == PositionState.ROLLING and not self.can_roll():
            raise InvalidTransitionError(
                f"maximum time rolls ({self.max_time_rolls}) exceeded"
            )

    def transition(self, to: PositionState, condition: str) -> None:
        """Move to a new state.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        to = PositionState(to)
        self.validate_transition(to, condition)

        now = utc_now()
        self.previous_state = self.current_state
        self.current_state = to
        self.transition_time = now
        self.transition_count[to] = self.transition_count.get(to, 0) + 1

        if to == PositionState.FOURTH_DOWN:
            self.fourth_down_start_time = now

    def get_transition_count(self, state: PositionState) -> int:
        """How many times the machine has entered state."""
        return self.transition_count.get(state, 0)

    def is_management_state(self) -> bool:
        """True in any of the four management tiers."""
        return self.current_state in MANAGEMENT_STATES

    def get_management_phase(self) -> int:
        """Management tier 1-4, or 0 outside management."""
        if self.current_state in MANAGEMENT_STATES:
            return MANAGEMENT_STATES.index(self.current_state) + 1
        return 0

    def can_adjust(self) -> bool:
        return self.get_transition_count(PositionState.ADJUSTING) < self.max_adjustments

    def can_roll(self) -> bool:
        return self.get_transition_count(PositionState.ROLLING) < self.max_time_rolls

    def can_punt(self) -> bool:
        # One punt per position
        return self.punt_count == 0

    def execute_punt(self) -> None:
        """Punt from fourth down back to first down (once per position)."""
        if self.current_state != PositionState.FOURTH_DOWN:
            raise InvalidTransitionError(
                f"punt only allowed from fourth_down, current state: {self.current_state.value}"
            )
        if not self.can_punt():
            raise InvalidTransitionError("punt not allowed: already used")
        self.transition(PositionState.FIRST_DOWN, CONDITION_PUNT_EXECUTED)
        self.punt_count += 1

    def skip_order_entry(self) -> None:
        """Go straight from Idle to management."""
        if self.current_state != PositionState.IDLE:
            raise InvalidTransitionError(
                f"skip order entry only allowed from idle, current state: {self.current_state.value}"
            )
        self.transition(PositionState.FIRST_DOWN, CONDITION_SKIP_ORDER_ENTRY)

    def force_close(self) -> bool:
        """Move to Closed without consulting the transition table.

        Reserved for the ledger's close operation, which is the authority on
        whether a record is finished (manual closes, fills, timeouts).

        Returns:
            False if the machine was already Closed (no-op), True otherwise
        """
        if self.current_state == PositionState.CLOSED:
            return False
        self.previous_state = self.current_state
        self.current_state = PositionState.CLOSED
        self.transition_time = utc_now()
        self.transition_count[PositionState.CLOSED] = (
            self.transition_count.get(PositionState.CLOSED, 0) + 1
        )
        return True

    def reset(self) -> None:
        """Clear runtime state, keeping configured limits."""
        self.current_state = PositionState.IDLE
        self.previous_state = PositionState.IDLE
        self.transition_time = utc_now()
        self.transition_count = {}
        self.fourth_down_start_time = None
        self.punt_count = 0

    def get_state_description(self) -> str:
        return _STATE_DESCRIPTIONS.get(self.current_state, "Unknown state")

    def validate_state_consistency(self) -> None:
        """Raise InvalidTransitionError if internal counters are inconsistent."""
        total = sum(self.transition_count.values())
        if (
            total == 0
            and self.current_state == PositionState.IDLE
            and self.previous_state == PositionState.IDLE
        ):
            return

        if self.transition_time is None and total > 0:
            raise InvalidTransitionError("missing transition time")

        if (
            self.current_state == self.previous_state
            and self.get_transition_count(self.current_state) == 0
            and total > 0
        ):
            raise InvalidTransitionError(
                f"inconsistent transition counts: current and previous state are both "
                f"{self.current_state.value} but no transitions recorded"
            )

        if self.get_transition_count(PositionState.ADJUSTING) > self.max_adjustments:
            raise InvalidTransitionError(
                f"adjustment count {self.get_transition_count(PositionState.ADJUSTING)} "
                f"exceeds maximum {self.max_adjustments}"
            )
        if self.get_transition_count(PositionState.ROLLING) > self.max_time_rolls:
            raise InvalidTransitionError(
                f"time roll count {self.get_transition_count(PositionState.ROLLING)} "
                f"exceeds maximum {self.max_time_rolls}"
            )

    def copy(self) -> "StateMachine":
        """Deep copy."""
        new = StateMachine(self.current_state, self.max_adjustments, self.max_time_rolls)
        new.previous_state = self.previous_state
        new.transition_time = self.transition_time
        new.transition_count = dict(self.transition_count)
        new.fourth_down_start_time = self.fourth_down_start_time
        new.punt_count = self.punt_count
        return new

    def to_dict(self) -> dict:
        """Convert to dictionary for persistence."""
        return {
            "current_state": self.current_state.value,
            "previous_state": self.previous_state.value,
            "transition_time": self.transition_time.isoformat() if self.transition_time else None,
            "transition_count": {k.value: v for k, v in self.transition_count.items()},
            "max_adjustments": self.max_adjustments,
            "max_time_rolls": self.max_time_rolls,
            "fourth_down_start_time": (
                self.fourth_down_start_time.isoformat() if self.fourth_down_start_time else None
            ),
            "punt_count": self.punt_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateMachine":
        """Restore from dictionary."""
        sm = cls(
            PositionState(data.get("current_state", PositionState.IDLE.value)),
            max_adjustments=data.get("max_adjustments", 3),
            max_time_rolls=data.get("max_time_rolls", 1),
        )
        sm.previous_state = PositionState(data.get("previous_state", sm.current_state.value))
        if data.get("transition_time"):
            sm.transition_time = datetime.fromisoformat(data["transition_time"])
        if "transition_count" in data:
            sm.transition_count = {
                PositionState(k): v for k, v in data["transition_count"].items()
            }
        if data.get("fourth_down_start_time"):
            sm.fourth_down_start_time = datetime.fromisoformat(data["fourth_down_start_time"])
        sm.punt_count = data.get("punt_count", 0)
        return sm
