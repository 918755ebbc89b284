"""State machine for one task's lifecycle.

This module uses the transitions library to define the lifecycle a task goes
through inside one loop iteration and to reject any transition that is not
listed explicitly. The orchestrator drives it; step handlers only decide
which trigger to fire.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)

PICK_TASK = "PICK_TASK"
PREPARE_BRANCH = "PREPARE_BRANCH"
VALIDATE_PRE = "VALIDATE_PRE"
IMPLEMENT = "IMPLEMENT"
VALIDATE_POST = "VALIDATE_POST"
REVIEW = "REVIEW"
CHECK = "CHECK"
REPAIR = "REPAIR"
SUBMIT = "SUBMIT"
CLOSE = "CLOSE"
BLOCKED = "BLOCKED"
SKIPPED = "SKIPPED"
PAUSED = "PAUSED"
DONE = "DONE"

TERMINAL_STATES = frozenset({BLOCKED, SKIPPED, PAUSED, DONE})


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, source: str, dest: str, message: Optional[str] = None) -> None:
        self.source = source
        self.dest = dest
        if message:
            super().__init__(message)
        else:
            super().__init__(f"Invalid transition from '{source}' to '{dest}'")


class TaskStateMachine:
    """Lifecycle of one task through the loop.

    The happy path is PICK_TASK → PREPARE_BRANCH → VALIDATE_PRE → IMPLEMENT →
    VALIDATE_POST → REVIEW → CHECK → SUBMIT → CLOSE → DONE. CHECK may
    divert to REPAIR, which returns to CHECK. BLOCKED, SKIPPED, PAUSED and
    DONE absorb.

    Example usage:
        >>> sm = TaskStateMachine()
        >>> sm.advance()
        >>> sm.current_state
        'PREPARE_BRANCH'
        >>> sm.block()
        >>> sm.is_terminal()
        True
    """

    STATES = [
        PICK_TASK,
        PREPARE_BRANCH,
        VALIDATE_PRE,
        IMPLEMENT,
        VALIDATE_POST,
        REVIEW,
        CHECK,
        REPAIR,
        SUBMIT,
        CLOSE,
        # Terminal states
        BLOCKED,
        SKIPPED,
        PAUSED,
        DONE,
    ]

    ACTIVE_STATES = [s for s in STATES if s not in TERMINAL_STATES]

    TRANSITIONS = [
        # Happy path
        {"trigger": "advance", "source": PICK_TASK, "dest": PREPARE_BRANCH},
        {"trigger": "advance", "source": PREPARE_BRANCH, "dest": VALIDATE_PRE},
        {"trigger": "advance", "source": VALIDATE_PRE, "dest": IMPLEMENT},
        {"trigger": "advance", "source": IMPLEMENT, "dest": VALIDATE_POST},
        {"trigger": "advance", "source": VALIDATE_POST, "dest": REVIEW},
        {"trigger": "advance", "source": REVIEW, "dest": CHECK},
        {"trigger": "advance", "source": CHECK, "dest": SUBMIT},
        {"trigger": "advance", "source": SUBMIT, "dest": CLOSE},
        {"trigger": "advance", "source": CLOSE, "dest": DONE},
        # Repair loop
        {"trigger": "repair", "source": CHECK, "dest": REPAIR},
        {"trigger": "advance", "source": REPAIR, "dest": CHECK},
        # A PR already exists: close without doing the work again
        {"trigger": "close_existing", "source": [s for s in ACTIVE_STATES if s != CLOSE], "dest": CLOSE},
        # Committed work found on a resumed branch, or a remediation skip
        {"trigger": "skip_to_submit", "source": [PREPARE_BRANCH, VALIDATE_PRE, IMPLEMENT,
                                                 VALIDATE_POST, REVIEW, CHECK], "dest": SUBMIT},
        # Infra breaker tripped during the baseline gate
        {"trigger": "pause", "source": [PICK_TASK, VALIDATE_PRE], "dest": PAUSED},
        # Exits available from every active state
        {"trigger": "block", "source": ACTIVE_STATES, "dest": BLOCKED},
        {"trigger": "skip", "source": ACTIVE_STATES, "dest": SKIPPED},
    ]

    def __init__(self, initial_state: str = PICK_TASK) -> None:
        """Initialize the state machine.

        Args:
            initial_state: Initial state for the machine (default: PICK_TASK)

        Raises:
            ValueError: If the initial state is unknown
        """
        if initial_state not in self.STATES:
            raise ValueError(f"Invalid state: '{initial_state}'. Valid states: {self.STATES}")
        self.history: List[str] = [initial_state]
        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=initial_state,
            auto_transitions=False,  # Only allow explicitly defined transitions
            send_event=False,
            after_state_change="_record_state",
        )

    def _record_state(self) -> None:
        self.history.append(self.current_state)
        logger.debug("State -> %s", self.current_state)

    @property
    def current_state(self) -> str:
        return str(self.state)

    def fire(self, trigger: str) -> str:
        """Fire a trigger by name.

        Args:
            trigger: One of advance, repair, close_existing, skip_to_submit,
                pause, block or skip

        Returns:
            The new state

        Raises:
            InvalidTransitionError: If the trigger is not valid from here
        """
        source = self.current_state
        try:
            getattr(self, trigger)()
        except (MachineError, AttributeError) as e:
            raise InvalidTransitionError(source, trigger, f"Cannot {trigger} from '{source}'") from e
        return self.current_state

    def can_transition_to(self, target_state: str) -> bool:
        """Check if a transition to the target state is valid."""
        for t in self.TRANSITIONS:
            sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
            if self.current_state in sources and t["dest"] == target_state:
                return True
        return False

    def validate_transition(self, target_state: str) -> None:
        """Validate that a transition to the target state is allowed.

        Raises:
            InvalidTransitionError: If the transition is not valid
        """
        if target_state not in self.STATES:
            raise InvalidTransitionError(
                self.current_state,
                target_state,
                f"Invalid target state: '{target_state}'. Valid states: {self.STATES}",
            )
        if not self.can_transition_to(target_state):
            raise InvalidTransitionError(self.current_state, target_state)

    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STATES

    def get_valid_transitions(self) -> List[str]:
        valid: List[str] = []
        for t in self.TRANSITIONS:
            sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
            if self.current_state in sources and t["dest"] not in valid:
                valid.append(t["dest"])
        return valid
