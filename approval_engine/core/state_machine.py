"""
State machine definitions for workflow instances and step executions.

Transition tables are the single reference for what a conditional write may
do; stores consult them before applying any transition.
"""

from enum import Enum
from typing import Iterable


class StepStatus(str, Enum):
    """
    Possible states for a step execution.

    State transitions:
    - PENDING -> IN_PROGRESS -> COMPLETED
    - PENDING/IN_PROGRESS -> SKIPPED (instance cancelled, optional step timed out)
    - IN_PROGRESS -> IN_PROGRESS (changes requested, resubmitted, escalated)
    """

    PENDING = "PENDING"          # Created with the instance, not yet active
    IN_PROGRESS = "IN_PROGRESS"  # Active, waiting for a decision
    COMPLETED = "COMPLETED"      # Decided (approve or reject)
    SKIPPED = "SKIPPED"          # Bypassed by cancellation or timeout
    CANCELLED = "CANCELLED"      # Withdrawn


class InstanceStatus(str, Enum):
    """
    Possible states for a workflow instance.

    State transitions:
    - PENDING -> IN_PROGRESS -> COMPLETED
    - PENDING/IN_PROGRESS -> CANCELLED
    """

    PENDING = "PENDING"          # Created, first step not yet activated
    IN_PROGRESS = "IN_PROGRESS"  # A step is active
    COMPLETED = "COMPLETED"      # Every step finished
    CANCELLED = "CANCELLED"      # Rejected or cancelled


class Decision(str, Enum):
    """Decisions an actor can submit against an active step."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


class StepStateMachine:
    """Transition rules for step executions."""

    # Valid state transitions: from_state -> [valid_to_states]
    VALID_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
        StepStatus.PENDING: {
            StepStatus.IN_PROGRESS,
            StepStatus.SKIPPED,
            StepStatus.CANCELLED,
        },
        StepStatus.IN_PROGRESS: {
            StepStatus.IN_PROGRESS,
            StepStatus.COMPLETED,
            StepStatus.SKIPPED,
            StepStatus.CANCELLED,
        },
        StepStatus.COMPLETED: set(),  # Terminal state
        StepStatus.SKIPPED: set(),    # Terminal state
        StepStatus.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES: frozenset[StepStatus] = frozenset({
        StepStatus.COMPLETED,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
    })

    # Statuses swept to SKIPPED when the instance is cancelled
    OPEN_STATES: frozenset[StepStatus] = frozenset({
        StepStatus.PENDING,
        StepStatus.IN_PROGRESS,
    })

    @classmethod
    def is_terminal(cls, state: StepStatus) -> bool:
        """Check if a state is terminal."""
        return StepStatus(state) in cls.TERMINAL_STATES

    @classmethod
    def can_transition(cls, from_state: StepStatus, to_state: StepStatus) -> bool:
        """Check if a transition is valid."""
        return StepStatus(to_state) in cls.VALID_TRANSITIONS.get(StepStatus(from_state), set())

    @classmethod
    def ensure_transition(cls, from_state: StepStatus, to_state: StepStatus) -> None:
        """
        Raise if a transition is not valid.

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not cls.can_transition(from_state, to_state):
            raise InvalidStateTransitionError(
                StepStatus(from_state).value,
                StepStatus(to_state).value,
                f"Valid transitions: {sorted(s.value for s in cls.VALID_TRANSITIONS[StepStatus(from_state)])}",
            )


class InstanceStateMachine:
    """Transition rules for workflow instances."""

    VALID_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
        InstanceStatus.PENDING: {InstanceStatus.IN_PROGRESS, InstanceStatus.CANCELLED},
        InstanceStatus.IN_PROGRESS: {
            InstanceStatus.IN_PROGRESS,  # current step pointer moves forward
            InstanceStatus.COMPLETED,
            InstanceStatus.CANCELLED,
        },
        InstanceStatus.COMPLETED: set(),  # Terminal state
        InstanceStatus.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES: frozenset[InstanceStatus] = frozenset({
        InstanceStatus.COMPLETED,
        InstanceStatus.CANCELLED,
    })

    ACTIVE_STATES: frozenset[InstanceStatus] = frozenset({
        InstanceStatus.PENDING,
        InstanceStatus.IN_PROGRESS,
    })

    @classmethod
    def is_terminal(cls, state: InstanceStatus) -> bool:
        """Check if a state is terminal."""
        return InstanceStatus(state) in cls.TERMINAL_STATES

    @classmethod
    def can_transition(cls, from_state: InstanceStatus, to_state: InstanceStatus) -> bool:
        """Check if a transition is valid."""
        return InstanceStatus(to_state) in cls.VALID_TRANSITIONS.get(InstanceStatus(from_state), set())


def compute_instance_status_from_steps(
    step_statuses: Iterable[StepStatus],
    cancelled: bool = False,
) -> InstanceStatus:
    """
    Compute the instance status implied by its step execution statuses.

    Args:
        step_statuses: Statuses of every step execution of the instance
        cancelled: Whether the instance was cancelled (rejection or explicit cancel)

    Returns:
        Computed InstanceStatus
    """
    if cancelled:
        return InstanceStatus.CANCELLED

    states = [StepStatus(s) for s in step_statuses]
    if not states or all(s == StepStatus.PENDING for s in states):
        return InstanceStatus.PENDING

    if all(s in StepStateMachine.TERMINAL_STATES for s in states):
        return InstanceStatus.COMPLETED

    return InstanceStatus.IN_PROGRESS
