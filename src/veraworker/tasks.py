"""Static mapping from trigger task names to processors.
"""
from veraworker.agent_events import process_agent_events
from veraworker.coldemail import process_cold_email_batch
from veraworker.config import WorkerConfig
from veraworker.delivery import Mailer
from veraworker.exceptions import UnknownTask
from veraworker.job import JobType
from veraworker.newsletter import process_newsletter_send
from veraworker.store import Store

__all__ = ['TASKS', 'run_task']


def _agent_events(store: Store, config: WorkerConfig, mailer: Mailer = None):
    # agent events send no mail
    return process_agent_events(store, config)


TASKS = {
    JobType.COLD_EMAIL_SEND: process_cold_email_batch,
    JobType.NEWSLETTER_SEND: process_newsletter_send,
    JobType.PROCESS_AGENT_EVENTS: _agent_events,
}


def run_task(task: str, store: Store, config: WorkerConfig, mailer: Mailer = None):
    """Dispatch task to its processor.

    Raises
        UnknownTask: task has no registered processor
    """
    if task not in TASKS:
        raise UnknownTask(task)
    return TASKS[task](store, config, mailer)
