"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- The in-memory store used by unit tests
- Recording mailers and row factories
- Config builders
"""
import copy
import datetime
import itertools
import logging
import threading

import pytest

from veraworker.config import WorkerConfig
from veraworker.delivery import Mailer, Message
from veraworker.exceptions import DeliveryError, RecipientRejected
from veraworker.job import Job, JobStatus
from veraworker.store import Store

logger = logging.getLogger(__name__)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def make_config(**overrides) -> WorkerConfig:
    """Create WorkerConfig with test-friendly values.

    Usage:
        config = make_config(batch_size=2)
    """
    defaults = {
        'lock_ttl_sec': 300,
        'batch_size': 500,
        'expected_send_latency_sec': 0.01,
        'cron_secret': 'test-secret',
    }
    defaults.update(overrides)
    return WorkerConfig(**defaults)


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class MemoryStore(Store):
    """Store holding rows in dicts.

    Every method runs under one mutex, giving the same single-row atomicity
    the database provides: insert fails on an existing key, predicated
    updates report whether anything matched.
    """

    def __init__(self):
        self._mutex = threading.Lock()
        self._ids = itertools.count(1)
        self.locks = {}
        self.jobs = {}
        self.campaigns = {}
        self.recipients = {}
        self.issues = {}
        self.subscribers = {}
        self.deliveries = {}
        self.agent_events = {}
        self.calls = []

    def _record(self, name):
        self.calls.append(name)

    @property
    def write_calls(self) -> list[str]:
        return [c for c in self.calls if not c.startswith(('get_', 'fetch_', 'count_'))]

    # locks

    def insert_lock(self, lock_name, instance_id, expires_at):
        with self._mutex:
            self._record('insert_lock')
            if lock_name in self.locks:
                return False
            self.locks[lock_name] = {'lock_name': lock_name, 'instance_id': instance_id,
                                     'expires_at': expires_at}
            return True

    def get_lock(self, lock_name):
        with self._mutex:
            self._record('get_lock')
            row = self.locks.get(lock_name)
            return dict(row) if row else None

    def take_over_lock(self, lock_name, instance_id, expires_at, now):
        with self._mutex:
            self._record('take_over_lock')
            row = self.locks.get(lock_name)
            if row is None or not row['expires_at'] < now:
                return False
            row.update(instance_id=instance_id, expires_at=expires_at)
            return True

    def delete_lock(self, lock_name, instance_id):
        with self._mutex:
            self._record('delete_lock')
            row = self.locks.get(lock_name)
            if row is None or row['instance_id'] != instance_id:
                return False
            del self.locks[lock_name]
            return True

    # jobs

    def insert_job(self, job_type, workspace_id, payload, created_at=None):
        with self._mutex:
            self._record('insert_job')
            job_id = next(self._ids)
            self.jobs[job_id] = {
                'id': job_id, 'job_type': job_type, 'workspace_id': workspace_id,
                'payload': copy.deepcopy(payload or {}), 'status': JobStatus.PENDING.value,
                'created_at': created_at or utcnow(), 'started_at': None,
                'completed_at': None, 'result': None, 'error_message': None,
            }
            return job_id

    def get_job(self, job_id):
        with self._mutex:
            self._record('get_job')
            row = self.jobs.get(job_id)
            return Job.from_row(copy.deepcopy(row)) if row else None

    def fetch_pending_job(self, job_type):
        with self._mutex:
            self._record('fetch_pending_job')
            pending = [r for r in self.jobs.values()
                       if r['job_type'] == job_type and r['status'] == JobStatus.PENDING.value]
            if not pending:
                return None
            row = min(pending, key=lambda r: (r['created_at'], r['id']))
            return Job.from_row(copy.deepcopy(row))

    def _update_job(self, name, job_id, **fields):
        with self._mutex:
            self._record(name)
            self.jobs[job_id].update(fields)

    def mark_job_processing(self, job_id, started_at):
        self._update_job('mark_job_processing', job_id,
                         status=JobStatus.PROCESSING.value, started_at=started_at)

    def mark_job_completed(self, job_id, completed_at, result):
        self._update_job('mark_job_completed', job_id, status=JobStatus.COMPLETED.value,
                         completed_at=completed_at, result=copy.deepcopy(result))

    def mark_job_failed(self, job_id, completed_at, error_message):
        self._update_job('mark_job_failed', job_id, status=JobStatus.FAILED.value,
                         completed_at=completed_at, error_message=error_message)

    # cold email

    def get_campaign(self, campaign_id):
        with self._mutex:
            self._record('get_campaign')
            row = self.campaigns.get(campaign_id)
            return dict(row) if row else None

    def set_campaign_status(self, campaign_id, status):
        with self._mutex:
            self._record('set_campaign_status')
            self.campaigns[campaign_id]['status'] = status

    def add_campaign_sent_count(self, campaign_id, sent):
        with self._mutex:
            self._record('add_campaign_sent_count')
            row = self.campaigns[campaign_id]
            row['sent_count'] = (row.get('sent_count') or 0) + sent

    def _pending_recipients(self, campaign_id):
        return sorted((r for r in self.recipients.values()
                       if r['campaign_id'] == campaign_id and r['status'] == 'pending'),
                      key=lambda r: r['id'])

    def count_pending_recipients(self, campaign_id):
        with self._mutex:
            self._record('count_pending_recipients')
            return len(self._pending_recipients(campaign_id))

    def fetch_pending_recipients(self, campaign_id, limit):
        with self._mutex:
            self._record('fetch_pending_recipients')
            return [dict(r) for r in self._pending_recipients(campaign_id)[:limit]]

    def mark_recipient(self, recipient_id, status, sent_at=None, message_id=None):
        with self._mutex:
            self._record('mark_recipient')
            row = self.recipients[recipient_id]
            row['status'] = status
            if sent_at is not None:
                row['sent_at'] = sent_at
            if message_id is not None:
                row['message_id'] = message_id

    # newsletter

    def get_issue(self, issue_id):
        with self._mutex:
            self._record('get_issue')
            row = self.issues.get(issue_id)
            return dict(row) if row else None

    def set_issue_status(self, issue_id, status):
        with self._mutex:
            self._record('set_issue_status')
            self.issues[issue_id]['status'] = status

    def mark_issue_sent(self, issue_id, sent_at, recipient_count):
        with self._mutex:
            self._record('mark_issue_sent')
            self.issues[issue_id].update(status='sent', sent_at=sent_at,
                                         recipient_count=recipient_count)

    def _active_subscribers(self, newsletter_id):
        return sorted((s for s in self.subscribers.values()
                       if s['newsletter_id'] == newsletter_id and s['status'] == 'active'),
                      key=lambda s: s['id'])

    def count_active_subscribers(self, newsletter_id):
        with self._mutex:
            self._record('count_active_subscribers')
            return len(self._active_subscribers(newsletter_id))

    def fetch_unsent_subscribers(self, issue_id, newsletter_id, after_id, limit):
        with self._mutex:
            self._record('fetch_unsent_subscribers')
            rows = [s for s in self._active_subscribers(newsletter_id)
                    if s['id'] > (after_id or 0) and (issue_id, s['id']) not in self.deliveries]
            return [dict(s) for s in rows[:limit]]

    def record_issue_delivery(self, issue_id, subscriber_id, message_id, sent_at):
        with self._mutex:
            self._record('record_issue_delivery')
            if (issue_id, subscriber_id) in self.deliveries:
                return False
            self.deliveries[(issue_id, subscriber_id)] = {'message_id': message_id, 'sent_at': sent_at}
            return True

    def count_issue_deliveries(self, issue_id):
        with self._mutex:
            self._record('count_issue_deliveries')
            return sum(1 for key in self.deliveries if key[0] == issue_id)

    def set_subscriber_status(self, subscriber_id, status):
        with self._mutex:
            self._record('set_subscriber_status')
            self.subscribers[subscriber_id]['status'] = status

    # agent events

    def fetch_due_agent_events(self, now, limit):
        with self._mutex:
            self._record('fetch_due_agent_events')
            rows = sorted((e for e in self.agent_events.values()
                           if e['status'] == 'pending' and e['expires_at'] is not None
                           and e['expires_at'] < now),
                          key=lambda e: (e['created_at'], e['id']))
            return [dict(e) for e in rows[:limit]]

    def mark_agent_event(self, event_id, status):
        with self._mutex:
            self._record('mark_agent_event')
            self.agent_events[event_id]['status'] = status

    # ------------------------------------------------------------------
    # factories

    def add_campaign(self, **fields) -> int:
        campaign_id = next(self._ids)
        row = {'id': campaign_id, 'workspace_id': 'ws-1', 'name': f'campaign-{campaign_id}',
               'subject': 'Hello {{first_name}}', 'body_template': 'Hi {{first_name}} at {{company}}',
               'from_email': 'sales@example.com', 'reply_to': None, 'status': 'draft',
               'sent_count': 0, 'recipient_count': 0}
        row.update(fields)
        self.campaigns[campaign_id] = row
        return campaign_id

    def add_recipient(self, campaign_id, email=None, **fields) -> int:
        recipient_id = next(self._ids)
        row = {'id': recipient_id, 'campaign_id': campaign_id,
               'email': email or f'r{recipient_id}@example.com', 'first_name': f'First{recipient_id}',
               'last_name': None, 'company': 'ACME', 'variables': None, 'status': 'pending',
               'sent_at': None, 'message_id': None}
        row.update(fields)
        self.recipients[recipient_id] = row
        return recipient_id

    def add_issue(self, newsletter_id=1, **fields) -> int:
        issue_id = next(self._ids)
        row = {'id': issue_id, 'newsletter_id': newsletter_id, 'workspace_id': 'ws-1',
               'subject': 'Weekly digest', 'body_html': '<p>News</p>', 'body_markdown': None,
               'from_email': 'news@example.com', 'status': 'draft', 'sent_at': None,
               'recipient_count': 0}
        row.update(fields)
        self.issues[issue_id] = row
        return issue_id

    def add_subscriber(self, newsletter_id=1, email=None, status='active') -> int:
        subscriber_id = next(self._ids)
        self.subscribers[subscriber_id] = {
            'id': subscriber_id, 'newsletter_id': newsletter_id,
            'email': email or f's{subscriber_id}@example.com', 'status': status}
        return subscriber_id

    def add_agent_event(self, event_type='insight', expires_at=None, created_at=None, **fields) -> int:
        event_id = next(self._ids)
        row = {'id': event_id, 'event_type': event_type, 'source_agent': 'scout',
               'payload': {}, 'status': 'pending', 'created_at': created_at or utcnow(),
               'expires_at': expires_at or utcnow() - datetime.timedelta(minutes=1)}
        row.update(fields)
        self.agent_events[event_id] = row
        return event_id


# ============================================================================
# MAILERS
# ============================================================================

class RecordingMailer(Mailer):
    """Mailer that records messages and fails for chosen addresses.

    Usage:
        mailer = RecordingMailer(reject={'bad@example.com'}, defer={'slow@example.com'})
    """

    def __init__(self, reject=(), defer=(), explode=()):
        self.sent = []
        self.reject = set(reject)
        self.defer = set(defer)
        self.explode = set(explode)
        self._lock = threading.Lock()

    def send(self, message: Message) -> str:
        if message.to in self.reject:
            raise RecipientRejected(f'{message.to} is inactive')
        if message.to in self.defer:
            raise DeliveryError(f'provider timeout for {message.to}')
        if message.to in self.explode:
            raise RuntimeError('provider credentials revoked')
        with self._lock:
            self.sent.append(message)
            return f'msg-{len(self.sent)}'

    @property
    def addresses(self) -> list[str]:
        return [m.to for m in self.sent]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()
