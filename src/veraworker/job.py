"""Job rows and the job status state machine.
"""
import datetime
import logging
from dataclasses import dataclass, field
from enum import Enum

from veraworker.exceptions import InvalidTransition

logger = logging.getLogger(__name__)

__all__ = ['JobStatus', 'JobType', 'Job', 'JobStateMachine']


class JobStatus(Enum):
    """Job lifecycle states.
    """
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class JobType:
    """Known job types. The column is a plain string so new types need no migration.
    """
    COLD_EMAIL_SEND = 'cold-email-send'
    NEWSLETTER_SEND = 'newsletter-send'
    PROCESS_AGENT_EVENTS = 'process-agent-events'


@dataclass
class Job:
    """A unit of asynchronous work as stored in the jobs queue.
    """
    id: int
    job_type: str
    status: JobStatus = JobStatus.PENDING
    workspace_id: str = None
    payload: dict = field(default_factory=dict)
    created_at: datetime.datetime = None
    started_at: datetime.datetime = None
    completed_at: datetime.datetime = None
    result: dict = None
    error_message: str = None

    @classmethod
    def from_row(cls, row: dict) -> 'Job':
        return cls(
            id=row['id'],
            job_type=row['job_type'],
            status=JobStatus(row['status']),
            workspace_id=row.get('workspace_id'),
            payload=row.get('payload') or {},
            created_at=row.get('created_at'),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
            result=row.get('result'),
            error_message=row.get('error_message'),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in {JobStatus.COMPLETED, JobStatus.FAILED}


class JobStateMachine:
    """State machine for a single job's status.

    Transitions are one-directional: pending -> processing -> completed | failed.
    Nothing returns to pending; retrying means enqueueing a new job row.
    """

    def __init__(self, state: JobStatus = JobStatus.PENDING):
        """Initialize state machine with transition graph.
        """
        self.state = state
        self._valid_transitions = {}
        self._setup_transition_graph()

    def _setup_transition_graph(self) -> None:
        """Define valid state transitions.
        """
        self._add_transition(JobStatus.PENDING, JobStatus.PROCESSING)
        self._add_transition(JobStatus.PROCESSING, JobStatus.COMPLETED)
        self._add_transition(JobStatus.PROCESSING, JobStatus.FAILED)

    def _add_transition(self, from_state: JobStatus, to_state: JobStatus) -> None:
        """Register a valid transition.

        Args:
            from_state: Source state
            to_state: Target state
        """
        if from_state not in self._valid_transitions:
            self._valid_transitions[from_state] = set()
        self._valid_transitions[from_state].add(to_state)

    def can_transition(self, new_state: JobStatus) -> bool:
        return new_state in self._valid_transitions.get(self.state, set())

    def transition_to(self, new_state: JobStatus) -> bool:
        """Attempt transition with validation.

        Args:
            new_state: Target state

        Returns
            True if transition succeeded, False if invalid
        """
        if not self.can_transition(new_state):
            logger.error(f'Invalid transition: {self.state.value} -> {new_state.value}')
            return False

        logger.debug(f'Job transition: {self.state.value} -> {new_state.value}')
        self.state = new_state
        return True

    def require(self, new_state: JobStatus) -> None:
        """Transition or raise.

        Raises
            InvalidTransition: If the move is not in the graph
        """
        if not self.can_transition(new_state):
            raise InvalidTransition(self.state, new_state)
        self.transition_to(new_state)

    def is_terminal(self) -> bool:
        return self.state in {JobStatus.COMPLETED, JobStatus.FAILED}
