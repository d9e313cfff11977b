# fleet_event_sync/load_status.py
"""
Lifecycle of a historical backfill job.

    pending -> running -> completed
                       -> failed
                       -> cancelled
    pending -> cancelled

Terminal states never transition again. Every status write goes through
`LoadStatus.ensure_transition`, so an illegal move raises before it reaches
the database.
"""

from enum import Enum

__all__: list[str] = [
    'ACTIVE_LOAD_STATUSES',
    'BackfillError',
    'InvalidStatusTransitionError',
    'LoadNotFoundError',
    'LoadStatus',
]


class BackfillError(Exception):
    """Base exception for historical load management failures."""


class InvalidStatusTransitionError(BackfillError):
    """Raised when a job is asked to move to a state its current one forbids."""

    def __init__(self, current: 'LoadStatus', target: 'LoadStatus') -> None:
        super().__init__(
            f'Invalid load status transition: {current.value} -> {target.value}'
        )
        self.current: LoadStatus = current
        self.target: LoadStatus = target


class LoadNotFoundError(BackfillError):
    """Raised when no historical_load_control row has the requested job id."""


class LoadStatus(str, Enum):
    """Status of a historical_load_control row."""

    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self]

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_LOAD_STATUSES

    def can_transition_to(self, target: 'LoadStatus') -> bool:
        return target in _ALLOWED_TRANSITIONS[self]

    def ensure_transition(self, target: 'LoadStatus') -> 'LoadStatus':
        """
        Validate a move from this status to target.

        Returns:
            target, for chaining into an assignment.

        Raises:
            InvalidStatusTransitionError: If the move is not allowed.
        """
        if not self.can_transition_to(target):
            raise InvalidStatusTransitionError(self, target)
        return target


_ALLOWED_TRANSITIONS: dict[LoadStatus, frozenset[LoadStatus]] = {
    LoadStatus.PENDING: frozenset({LoadStatus.RUNNING, LoadStatus.CANCELLED}),
    LoadStatus.RUNNING: frozenset(
        {LoadStatus.COMPLETED, LoadStatus.FAILED, LoadStatus.CANCELLED}
    ),
    LoadStatus.COMPLETED: frozenset(),
    LoadStatus.FAILED: frozenset(),
    LoadStatus.CANCELLED: frozenset(),
}

ACTIVE_LOAD_STATUSES: frozenset[LoadStatus] = frozenset(
    {LoadStatus.PENDING, LoadStatus.RUNNING}
)
