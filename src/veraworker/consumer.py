"""Job queue consumer.

Picks the oldest pending job of one type and drives it to a terminal state.
Claiming is a plain update, so consume_one must only run under the task's
distributed lock; run_locked composes the two.
"""
import datetime
import functools
import logging
import time
from dataclasses import dataclass

from veraworker.job import JobStateMachine, JobStatus
from veraworker.lock import DEFAULT_TTL_SEC, LockManager
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['JobOutcome', 'consume_one', 'run_locked', 'log_duration']


def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = int((time.time() - start) * 1000)
                logger.info(f'{name} finished in {duration_ms}ms')
        return wrapper
    return decorator


@dataclass
class JobOutcome:
    """Terminal state of one consumed job.
    """
    job_id: int
    job_type: str
    status: JobStatus
    result: dict = None


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def consume_one(store: Store, job_type: str, handler: callable) -> JobOutcome | None:
    """Claim and run the oldest pending job of job_type.

    Precondition: the caller holds the distributed lock for job_type.

    Args:
        store: Job store
        job_type: Job type to consume
        handler: Function(job) -> result dict

    Returns
        JobOutcome for the completed job, None if the queue was empty

    Raises
        Whatever handler raised, after the job is marked failed
    """
    job = store.fetch_pending_job(job_type)
    if job is None:
        logger.debug(f'No pending {job_type} jobs')
        return None

    machine = JobStateMachine(job.status)
    machine.require(JobStatus.PROCESSING)
    store.mark_job_processing(job.id, _now())
    logger.info(f'Claimed {job_type} job {job.id}')

    try:
        result = handler(job)
    except Exception as e:
        machine.require(JobStatus.FAILED)
        error_message = str(e) or type(e).__name__
        store.mark_job_failed(job.id, _now(), error_message)
        logger.error(f'{job_type} job {job.id} failed: {error_message}')
        raise

    machine.require(JobStatus.COMPLETED)
    store.mark_job_completed(job.id, _now(), result)
    logger.info(f'{job_type} job {job.id} completed: {result}')
    return JobOutcome(job.id, job_type, JobStatus.COMPLETED, result)


def run_locked(store: Store, job_type: str, handler: callable,
               ttl_sec: int = DEFAULT_TTL_SEC) -> JobOutcome | None:
    """Consume one job of job_type under the lock named after it.

    Returns
        JobOutcome, or None if the lock was held or the queue was empty
    """
    return LockManager(store).with_lock(
        job_type, lambda: consume_one(store, job_type, handler), ttl_sec)
