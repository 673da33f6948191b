"""Agent event processing.

Events are rows in the agent events table rather than queue jobs; a run
handles up to one batch of pending events whose expiry has passed.
"""
import datetime
import logging

from veraworker.config import WorkerConfig
from veraworker.consumer import log_duration
from veraworker.job import JobType
from veraworker.lock import LockManager
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['process_agent_events', 'dispatch_due_events']


def log_event(event: dict) -> None:
    logger.info(f'Processing event {event["id"]}: {event["event_type"]} from {event.get("source_agent")}')


def dispatch_due_events(store: Store, config: WorkerConfig, handlers: dict = None) -> int:
    """Hand each due event to its handler and record the outcome.

    Args:
        store: Event store
        config: Worker configuration
        handlers: Optional event_type -> Function(event) mapping

    Returns
        Number of events marked processed
    """
    handlers = handlers or {}
    now = datetime.datetime.now(datetime.timezone.utc)
    events = store.fetch_due_agent_events(now, config.agent_event_batch_size)
    if not events:
        return 0

    processed = 0
    for event in events:
        handler = handlers.get(event['event_type'], log_event)
        try:
            handler(event)
        except Exception as e:
            logger.error(f'Failed to process event {event["id"]}: {e}', exc_info=True)
            store.mark_agent_event(event['id'], 'failed')
            continue
        store.mark_agent_event(event['id'], 'processed')
        processed += 1

    logger.info(f'Processed {processed}/{len(events)} agent events')
    return processed


@log_duration('process_agent_events')
def process_agent_events(store: Store, config: WorkerConfig = None, handlers: dict = None) -> int | None:
    """Run one batch of agent events under the process-agent-events lock.

    Returns
        Processed count, or None if another instance holds the lock
    """
    config = config or WorkerConfig()
    return LockManager(store).with_lock(
        JobType.PROCESS_AGENT_EVENTS,
        lambda: dispatch_due_events(store, config, handlers),
        config.lock_ttl_sec)
