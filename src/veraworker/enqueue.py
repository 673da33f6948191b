"""Producer side of the jobs queue.

Mirrors what the web layer does when a user asks for a send: validate the
entity, flip it to 'sending' and leave a pending job for the worker.
"""
import logging

from veraworker.exceptions import EnqueueRejected, EntityNotFound
from veraworker.job import JobType
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['enqueue_job', 'queue_campaign_send', 'queue_issue_send']


def enqueue_job(store: Store, job_type: str, workspace_id: str = None, payload: dict = None) -> int:
    """Insert a pending job.

    Returns
        New job id
    """
    job_id = store.insert_job(job_type, workspace_id, payload or {})
    logger.info(f'Queued {job_type} job {job_id}')
    return job_id


def queue_campaign_send(store: Store, campaign_id) -> dict:
    """Queue a cold email campaign for sending.

    Returns
        job_id and pending_recipients count

    Raises
        EntityNotFound: No such campaign
        EnqueueRejected: Already sending (409) or nothing to send (400)
    """
    campaign = store.get_campaign(campaign_id)
    if not campaign:
        raise EntityNotFound('Campaign', campaign_id)
    if campaign.get('status') == 'sending':
        raise EnqueueRejected('Campaign already sending', 409)

    pending = store.count_pending_recipients(campaign_id)
    if not pending:
        raise EnqueueRejected('No pending recipients', 400)

    store.set_campaign_status(campaign_id, 'sending')
    job_id = enqueue_job(store, JobType.COLD_EMAIL_SEND, campaign.get('workspace_id'),
                         {'campaign_id': campaign_id})
    return {'job_id': job_id, 'pending_recipients': pending}


def queue_issue_send(store: Store, issue_id) -> dict:
    """Queue a newsletter issue for sending.

    Returns
        job_id and subscriber_count

    Raises
        EntityNotFound: No such issue
        EnqueueRejected: Already sent (409), no content or no subscribers (400)
    """
    issue = store.get_issue(issue_id)
    if not issue:
        raise EntityNotFound('Issue', issue_id)
    if issue.get('status') == 'sent':
        raise EnqueueRejected('Issue already sent', 409)
    if not issue.get('body_html') and not issue.get('body_markdown'):
        raise EnqueueRejected('Issue has no content', 400)

    count = store.count_active_subscribers(issue['newsletter_id'])
    if not count:
        raise EnqueueRejected('No active subscribers', 400)

    store.set_issue_status(issue_id, 'sending')
    job_id = enqueue_job(store, JobType.NEWSLETTER_SEND, issue.get('workspace_id'),
                         {'issue_id': issue_id, 'newsletter_id': issue['newsletter_id']})
    return {'job_id': job_id, 'subscriber_count': count}
