"""Cold email campaign sender.

Each run claims one cold-email-send job and sends one bounded batch of the
campaign's pending recipients. Every recipient row is updated as soon as its
send returns, so a crash mid-batch leaves accurate partial progress. While
any recipient is still pending, including deferred ones, the run enqueues a
follow-up job for the rest.
"""
import datetime
import functools
import logging

from veraworker.config import WorkerConfig
from veraworker.consumer import JobOutcome, log_duration, run_locked
from veraworker.delivery import LoggingMailer, Mailer, Message
from veraworker.delivery import recipient_variables, render_template
from veraworker.exceptions import DeliveryError, EntityNotFound, RecipientRejected
from veraworker.job import Job, JobType
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['process_cold_email_batch', 'send_campaign_batch']


def build_message(campaign: dict, recipient: dict) -> Message:
    variables = recipient_variables(recipient)
    return Message(
        to=recipient['email'],
        subject=render_template(campaign['subject'], variables),
        body=render_template(campaign['body_template'], variables),
        from_email=campaign.get('from_email'),
        reply_to=campaign.get('reply_to'),
        tag=JobType.COLD_EMAIL_SEND,
        metadata={'campaign_id': campaign['id'], 'recipient_id': recipient['id']},
    )


def send_campaign_batch(store: Store, config: WorkerConfig, mailer: Mailer, job: Job) -> dict:
    """Send one batch for the campaign named in job.payload.

    Returns
        Counts of sent, bounced and deferred recipients

    Raises
        EntityNotFound: The campaign does not exist
    """
    campaign_id = job.payload.get('campaign_id')
    campaign = store.get_campaign(campaign_id) if campaign_id is not None else None
    if not campaign:
        raise EntityNotFound('Campaign', campaign_id)

    recipients = store.fetch_pending_recipients(campaign_id, config.batch_size)
    logger.info(f'Campaign {campaign_id}: {len(recipients)} pending recipients in batch')

    sent = bounced = deferred = 0
    for recipient in recipients:
        try:
            message_id = mailer.send(build_message(campaign, recipient))
        except RecipientRejected as e:
            store.mark_recipient(recipient['id'], 'bounced')
            bounced += 1
            logger.warning(f'Recipient {recipient["email"]} rejected: {e}')
            continue
        except DeliveryError as e:
            deferred += 1
            logger.warning(f'Delivery to {recipient["email"]} deferred: {e}')
            continue
        store.mark_recipient(recipient['id'], 'sent',
                             sent_at=datetime.datetime.now(datetime.timezone.utc),
                             message_id=message_id)
        sent += 1

    if sent:
        store.add_campaign_sent_count(campaign_id, sent)

    _finish_campaign(store, job, campaign_id)

    return {'sent': sent, 'bounced': bounced, 'deferred': deferred}


def _finish_campaign(store: Store, job: Job, campaign_id) -> None:
    """Queue a follow-up job while any recipient is still pending, or mark the campaign completed.

    Deferred recipients stay pending and are retried by the follow-up job on
    a later trigger tick.
    """
    remaining = store.count_pending_recipients(campaign_id)
    if not remaining:
        store.set_campaign_status(campaign_id, 'completed')
        logger.info(f'Campaign {campaign_id} completed')
        return

    next_id = store.insert_job(JobType.COLD_EMAIL_SEND, job.workspace_id, job.payload)
    logger.info(f'Campaign {campaign_id}: {remaining} recipients left, queued job {next_id}')


@log_duration('process_cold_email_batch')
def process_cold_email_batch(store: Store, config: WorkerConfig = None,
                             mailer: Mailer = None) -> JobOutcome | None:
    """Run one cold-email-send job under its distributed lock.
    """
    config = config or WorkerConfig()
    mailer = mailer or LoggingMailer()
    handler = functools.partial(send_campaign_batch, store, config, mailer)
    return run_locked(store, JobType.COLD_EMAIL_SEND, handler, config.lock_ttl_sec)
