# core/types/status.py
"""
Job states and WAL event kinds.
This module should not import from other backgrounder modules.
"""

from enum import Enum


class JobState(Enum):
    """Job lifecycle state"""

    QUEUED = 'queued'  # Waiting for a worker. Also the state a retried job returns to.

    RUNNING = 'running'  # Picked up by a worker; the handler is executing.

    COMPLETE = 'complete'  # The handler returned normally.

    FAILED = 'failed'  # Retry budget exhausted, or no definition for the job name.

    @property
    def is_terminal(self) -> bool:
        """Whether this state is final (no further transitions)."""
        return self in JOB_TERMINAL_STATES


JOB_TERMINAL_STATES: frozenset[JobState] = frozenset({
    JobState.COMPLETE,
    JobState.FAILED,
})

# Allowed moves of the job state machine.
JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING}),
    JobState.RUNNING: frozenset({JobState.COMPLETE, JobState.FAILED, JobState.QUEUED}),
    JobState.COMPLETE: frozenset(),
    JobState.FAILED: frozenset(),
}


class WalEvent(Enum):
    """Lifecycle event recorded by one WAL entry"""

    ENQUEUED = 'enqueued'
    STARTED = 'started'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRY = 'retry'
