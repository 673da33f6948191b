"""Newsletter issue sender.
"""
import datetime
import functools
import logging

from veraworker.config import WorkerConfig
from veraworker.consumer import JobOutcome, log_duration, run_locked
from veraworker.delivery import LoggingMailer, Mailer, Message, render_template
from veraworker.exceptions import DeliveryError, EntityNotFound, RecipientRejected
from veraworker.job import Job, JobType
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['process_newsletter_send', 'send_issue']


def iter_unsent_subscribers(store: Store, issue_id, newsletter_id, page_size: int):
    """Yield active subscribers without a delivery for issue_id, page by page, keyed on id.
    """
    after_id = 0
    while True:
        page = store.fetch_unsent_subscribers(issue_id, newsletter_id, after_id, page_size)
        yield from page
        if len(page) < page_size:
            return
        after_id = page[-1]['id']


def send_issue(store: Store, config: WorkerConfig, mailer: Mailer, job: Job) -> dict:
    """Send the issue named in job.payload to every active subscriber.

    Each successful send is recorded against the issue before moving on, so a
    rerun after a crash skips subscribers who already received it. Deferred
    deliveries leave the issue unsent and queue a follow-up job. The issue is
    only marked sent when there was at least one subscriber.

    Raises
        EntityNotFound: The issue does not exist
    """
    issue_id = job.payload.get('issue_id')
    issue = store.get_issue(issue_id) if issue_id is not None else None
    if not issue:
        raise EntityNotFound('Newsletter issue', issue_id)

    body = issue.get('body_html') or issue.get('body_markdown') or ''
    sent = bounced = deferred = 0
    for subscriber in iter_unsent_subscribers(store, issue_id, issue['newsletter_id'], config.batch_size):
        message = Message(
            to=subscriber['email'],
            subject=issue['subject'],
            body=render_template(body, {'email': subscriber['email']}),
            from_email=issue.get('from_email'),
            tag=JobType.NEWSLETTER_SEND,
            metadata={'issue_id': issue_id, 'subscriber_id': subscriber['id']},
        )
        try:
            message_id = mailer.send(message)
        except RecipientRejected as e:
            store.set_subscriber_status(subscriber['id'], 'bounced')
            bounced += 1
            logger.warning(f'Subscriber {subscriber["email"]} rejected: {e}')
            continue
        except DeliveryError as e:
            deferred += 1
            logger.warning(f'Delivery to {subscriber["email"]} deferred: {e}')
            continue
        store.record_issue_delivery(issue_id, subscriber['id'], message_id,
                                    datetime.datetime.now(datetime.timezone.utc))
        sent += 1

    if deferred:
        next_id = store.insert_job(JobType.NEWSLETTER_SEND, job.workspace_id, job.payload)
        logger.info(f'Issue {issue_id}: {deferred} deliveries deferred, queued job {next_id}')
        return {'sent': sent, 'bounced': bounced, 'deferred': deferred}

    delivered = store.count_issue_deliveries(issue_id)
    if not (sent or bounced or delivered):
        logger.info(f'Issue {issue_id}: no active subscribers')
        return {'sent': 0}

    store.mark_issue_sent(issue_id, datetime.datetime.now(datetime.timezone.utc), delivered)
    logger.info(f'Issue {issue_id} sent to {delivered} subscribers')
    return {'sent': sent, 'bounced': bounced, 'deferred': deferred}


@log_duration('process_newsletter_send')
def process_newsletter_send(store: Store, config: WorkerConfig = None,
                            mailer: Mailer = None) -> JobOutcome | None:
    """Run one newsletter-send job under its distributed lock.
    """
    config = config or WorkerConfig()
    mailer = mailer or LoggingMailer()
    handler = functools.partial(send_issue, store, config, mailer)
    return run_locked(store, JobType.NEWSLETTER_SEND, handler, config.lock_ttl_sec)
