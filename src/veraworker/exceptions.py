"""Worker exception hierarchy.

Store errors (SQLAlchemy) are not wrapped; they propagate as-is.
"""


class VeraWorkerError(Exception):
    """Base class for worker errors.
    """


class LockNotAcquired(VeraWorkerError):
    """Raised when a task lock cannot be acquired.
    """


class EntityNotFound(VeraWorkerError):
    """Raised when a job references a row that does not exist.
    """

    def __init__(self, kind: str, entity_id):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f'{kind} {entity_id} not found')


class InvalidTransition(VeraWorkerError):
    """Raised on an illegal job status change.
    """

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f'Invalid transition: {from_status.value} -> {to_status.value}')


class UnknownTask(VeraWorkerError):
    """Raised when dispatching a task name with no registered processor.
    """

    def __init__(self, task: str):
        self.task = task
        super().__init__(f'Unknown task: {task}')


class EnqueueRejected(VeraWorkerError):
    """Raised when an entity is not in a state that allows queueing a send.
    """

    def __init__(self, reason: str, status_code: int = 400):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class DeliveryError(VeraWorkerError):
    """A single delivery failed; the recipient may be retried later.
    """


class RecipientRejected(DeliveryError):
    """The provider permanently refused a single address.
    """
