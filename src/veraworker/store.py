"""Store interface and the PostgreSQL implementation.

Every component receives the store explicitly. Each method is a single
round trip relying on the database's native single-row atomicity: an
insert fails on a duplicate key, a predicated update reports zero rows when
its predicate no longer matches. No method wraps several steps in one
transaction.
"""
import contextlib
import datetime
import json
import logging

from sqlalchemy import Engine, create_engine, text

from veraworker.config import WorkerConfig, build_connection_string
from veraworker.job import Job, JobStatus
from veraworker.schema import get_table_names

logger = logging.getLogger(__name__)

__all__ = ['Store', 'SqlStore']


class Store:
    """Storage contract used by the lock manager, the consumer and the processors.
    """

    # ============================================================
    # LOCKS
    # ============================================================

    def insert_lock(self, lock_name: str, instance_id: str, expires_at: datetime.datetime) -> bool:
        """Insert a lock row. Returns False if a row for lock_name already exists.
        """
        raise NotImplementedError

    def get_lock(self, lock_name: str) -> dict | None:
        raise NotImplementedError

    def take_over_lock(self, lock_name: str, instance_id: str, expires_at: datetime.datetime,
                       now: datetime.datetime) -> bool:
        """Swap owner and expiry only where the current expiry is before now.

        Returns
            False when zero rows matched (another claimant renewed it first)
        """
        raise NotImplementedError

    def delete_lock(self, lock_name: str, instance_id: str) -> bool:
        """Delete the lock row only if instance_id still owns it.
        """
        raise NotImplementedError

    # ============================================================
    # JOBS
    # ============================================================

    def insert_job(self, job_type: str, workspace_id: str, payload: dict) -> int:
        raise NotImplementedError

    def get_job(self, job_id: int) -> Job | None:
        raise NotImplementedError

    def fetch_pending_job(self, job_type: str) -> Job | None:
        """Oldest pending job of job_type by created_at, or None.
        """
        raise NotImplementedError

    def mark_job_processing(self, job_id: int, started_at: datetime.datetime) -> None:
        raise NotImplementedError

    def mark_job_completed(self, job_id: int, completed_at: datetime.datetime, result: dict) -> None:
        raise NotImplementedError

    def mark_job_failed(self, job_id: int, completed_at: datetime.datetime, error_message: str) -> None:
        raise NotImplementedError

    # ============================================================
    # COLD EMAIL
    # ============================================================

    def get_campaign(self, campaign_id: int) -> dict | None:
        raise NotImplementedError

    def set_campaign_status(self, campaign_id: int, status: str) -> None:
        raise NotImplementedError

    def add_campaign_sent_count(self, campaign_id: int, sent: int) -> None:
        raise NotImplementedError

    def count_pending_recipients(self, campaign_id: int) -> int:
        raise NotImplementedError

    def fetch_pending_recipients(self, campaign_id: int, limit: int) -> list[dict]:
        raise NotImplementedError

    def mark_recipient(self, recipient_id: int, status: str, sent_at: datetime.datetime = None,
                       message_id: str = None) -> None:
        raise NotImplementedError

    # ============================================================
    # NEWSLETTER
    # ============================================================

    def get_issue(self, issue_id: int) -> dict | None:
        raise NotImplementedError

    def set_issue_status(self, issue_id: int, status: str) -> None:
        raise NotImplementedError

    def mark_issue_sent(self, issue_id: int, sent_at: datetime.datetime, recipient_count: int) -> None:
        raise NotImplementedError

    def count_active_subscribers(self, newsletter_id: int) -> int:
        raise NotImplementedError

    def fetch_unsent_subscribers(self, issue_id: int, newsletter_id: int, after_id: int,
                                 limit: int) -> list[dict]:
        """Page of active subscribers with id > after_id and no delivery for issue_id, ordered by id.
        """
        raise NotImplementedError

    def record_issue_delivery(self, issue_id: int, subscriber_id: int, message_id: str,
                              sent_at: datetime.datetime) -> bool:
        """Record one successful send. False if it was already recorded.
        """
        raise NotImplementedError

    def count_issue_deliveries(self, issue_id: int) -> int:
        raise NotImplementedError

    def set_subscriber_status(self, subscriber_id: int, status: str) -> None:
        raise NotImplementedError

    # ============================================================
    # AGENT EVENTS
    # ============================================================

    def fetch_due_agent_events(self, now: datetime.datetime, limit: int) -> list[dict]:
        """Pending events whose expires_at is before now, oldest first.
        """
        raise NotImplementedError

    def mark_agent_event(self, event_id: int, status: str) -> None:
        raise NotImplementedError


class SqlStore(Store):
    """Store backed by PostgreSQL through a SQLAlchemy engine.
    """

    def __init__(self, engine: Engine, appname: str = 'vera_'):
        self.engine = engine
        self.tables = get_table_names(appname)

    @classmethod
    def from_config(cls, config: WorkerConfig) -> 'SqlStore':
        """Create engine from connection parameters.
        """
        connection_string = build_connection_string(
            config.host, config.port, config.dbname, config.user, config.password)
        engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        return cls(engine, config.appname)

    def execute(self, sql: str, params: dict = None):
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters for the statement

        Returns
            Result proxy object
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None) -> list[dict]:
        """Execute query and return all rows as dicts.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result]

    def query_one(self, sql: str, params: dict = None) -> dict | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()

    # ------------------------------------------------------------
    # locks

    def insert_lock(self, lock_name, instance_id, expires_at):
        sql = f"""
        INSERT INTO {self.tables["Lock"]} (lock_name, instance_id, expires_at)
        VALUES (:lock_name, :instance_id, :expires_at)
        ON CONFLICT (lock_name) DO NOTHING
        """
        result = self.execute(sql, {
            'lock_name': lock_name,
            'instance_id': instance_id,
            'expires_at': expires_at
        })
        return result.rowcount > 0

    def get_lock(self, lock_name):
        sql = f"""
        SELECT lock_name, instance_id, expires_at
        FROM {self.tables["Lock"]}
        WHERE lock_name = :lock_name
        """
        return self.query_one(sql, {'lock_name': lock_name})

    def take_over_lock(self, lock_name, instance_id, expires_at, now):
        sql = f"""
        UPDATE {self.tables["Lock"]}
        SET instance_id = :instance_id, expires_at = :expires_at
        WHERE lock_name = :lock_name AND expires_at < :now
        """
        result = self.execute(sql, {
            'lock_name': lock_name,
            'instance_id': instance_id,
            'expires_at': expires_at,
            'now': now
        })
        return result.rowcount > 0

    def delete_lock(self, lock_name, instance_id):
        sql = f"""
        DELETE FROM {self.tables["Lock"]}
        WHERE lock_name = :lock_name AND instance_id = :instance_id
        """
        result = self.execute(sql, {'lock_name': lock_name, 'instance_id': instance_id})
        return result.rowcount > 0

    # ------------------------------------------------------------
    # jobs

    def insert_job(self, job_type, workspace_id, payload):
        sql = f"""
        INSERT INTO {self.tables["Job"]} (job_type, workspace_id, payload, status, created_at)
        VALUES (:job_type, :workspace_id, :payload, :status, :created_at)
        RETURNING id
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), {
                'job_type': job_type,
                'workspace_id': workspace_id,
                'payload': json.dumps(payload or {}),
                'status': JobStatus.PENDING.value,
                'created_at': datetime.datetime.now(datetime.timezone.utc)
            })
            job_id = result.scalar()
            conn.commit()
        logger.debug(f'Inserted {job_type} job {job_id}')
        return job_id

    @property
    def _job_columns(self) -> str:
        return ('id, job_type, workspace_id, payload, status, created_at, '
                'started_at, completed_at, result, error_message')

    def get_job(self, job_id):
        sql = f'SELECT {self._job_columns} FROM {self.tables["Job"]} WHERE id = :id'
        row = self.query_one(sql, {'id': job_id})
        return Job.from_row(row) if row else None

    def fetch_pending_job(self, job_type):
        sql = f"""
        SELECT {self._job_columns}
        FROM {self.tables["Job"]}
        WHERE job_type = :job_type AND status = :status
        ORDER BY created_at ASC, id ASC
        LIMIT 1
        """
        row = self.query_one(sql, {'job_type': job_type, 'status': JobStatus.PENDING.value})
        return Job.from_row(row) if row else None

    def mark_job_processing(self, job_id, started_at):
        sql = f'UPDATE {self.tables["Job"]} SET status = :status, started_at = :started_at WHERE id = :id'
        self.execute(sql, {'id': job_id, 'status': JobStatus.PROCESSING.value, 'started_at': started_at})

    def mark_job_completed(self, job_id, completed_at, result):
        sql = f"""
        UPDATE {self.tables["Job"]}
        SET status = :status, completed_at = :completed_at, result = :result
        WHERE id = :id
        """
        self.execute(sql, {
            'id': job_id,
            'status': JobStatus.COMPLETED.value,
            'completed_at': completed_at,
            'result': json.dumps(result)
        })

    def mark_job_failed(self, job_id, completed_at, error_message):
        sql = f"""
        UPDATE {self.tables["Job"]}
        SET status = :status, completed_at = :completed_at, error_message = :error_message
        WHERE id = :id
        """
        self.execute(sql, {
            'id': job_id,
            'status': JobStatus.FAILED.value,
            'completed_at': completed_at,
            'error_message': error_message
        })

    # ------------------------------------------------------------
    # cold email

    def get_campaign(self, campaign_id):
        sql = f'SELECT * FROM {self.tables["Campaign"]} WHERE id = :id'
        return self.query_one(sql, {'id': campaign_id})

    def set_campaign_status(self, campaign_id, status):
        sql = f'UPDATE {self.tables["Campaign"]} SET status = :status, updated_at = :now WHERE id = :id'
        self.execute(sql, {'id': campaign_id, 'status': status,
                           'now': datetime.datetime.now(datetime.timezone.utc)})

    def add_campaign_sent_count(self, campaign_id, sent):
        sql = f"""
        UPDATE {self.tables["Campaign"]}
        SET sent_count = COALESCE(sent_count, 0) + :sent
        WHERE id = :id
        """
        self.execute(sql, {'id': campaign_id, 'sent': sent})

    def count_pending_recipients(self, campaign_id):
        sql = f"""
        SELECT COUNT(*) AS count FROM {self.tables["Recipient"]}
        WHERE campaign_id = :campaign_id AND status = 'pending'
        """
        return self.query_one(sql, {'campaign_id': campaign_id})['count']

    def fetch_pending_recipients(self, campaign_id, limit):
        sql = f"""
        SELECT id, campaign_id, email, first_name, last_name, company, variables, status
        FROM {self.tables["Recipient"]}
        WHERE campaign_id = :campaign_id AND status = 'pending'
        ORDER BY id ASC
        LIMIT :limit
        """
        return self.query(sql, {'campaign_id': campaign_id, 'limit': limit})

    def mark_recipient(self, recipient_id, status, sent_at=None, message_id=None):
        sql = f"""
        UPDATE {self.tables["Recipient"]}
        SET status = :status,
            sent_at = COALESCE(:sent_at, sent_at),
            message_id = COALESCE(:message_id, message_id)
        WHERE id = :id
        """
        self.execute(sql, {'id': recipient_id, 'status': status, 'sent_at': sent_at,
                           'message_id': message_id})

    # ------------------------------------------------------------
    # newsletter

    def get_issue(self, issue_id):
        sql = f'SELECT * FROM {self.tables["Issue"]} WHERE id = :id'
        return self.query_one(sql, {'id': issue_id})

    def set_issue_status(self, issue_id, status):
        sql = f'UPDATE {self.tables["Issue"]} SET status = :status, updated_at = :now WHERE id = :id'
        self.execute(sql, {'id': issue_id, 'status': status,
                           'now': datetime.datetime.now(datetime.timezone.utc)})

    def mark_issue_sent(self, issue_id, sent_at, recipient_count):
        sql = f"""
        UPDATE {self.tables["Issue"]}
        SET status = 'sent', sent_at = :sent_at, recipient_count = :recipient_count
        WHERE id = :id
        """
        self.execute(sql, {'id': issue_id, 'sent_at': sent_at, 'recipient_count': recipient_count})

    def count_active_subscribers(self, newsletter_id):
        sql = f"""
        SELECT COUNT(*) AS count FROM {self.tables["Subscriber"]}
        WHERE newsletter_id = :newsletter_id AND status = 'active'
        """
        return self.query_one(sql, {'newsletter_id': newsletter_id})['count']

    def fetch_unsent_subscribers(self, issue_id, newsletter_id, after_id, limit):
        sql = f"""
        SELECT s.id, s.newsletter_id, s.email, s.status
        FROM {self.tables["Subscriber"]} s
        WHERE s.newsletter_id = :newsletter_id AND s.status = 'active' AND s.id > :after_id
        AND NOT EXISTS (
            SELECT 1 FROM {self.tables["Delivery"]} d
            WHERE d.issue_id = :issue_id AND d.subscriber_id = s.id
        )
        ORDER BY s.id ASC
        LIMIT :limit
        """
        return self.query(sql, {'issue_id': issue_id, 'newsletter_id': newsletter_id,
                                'after_id': after_id or 0, 'limit': limit})

    def record_issue_delivery(self, issue_id, subscriber_id, message_id, sent_at):
        sql = f"""
        INSERT INTO {self.tables["Delivery"]} (issue_id, subscriber_id, message_id, sent_at)
        VALUES (:issue_id, :subscriber_id, :message_id, :sent_at)
        ON CONFLICT (issue_id, subscriber_id) DO NOTHING
        """
        result = self.execute(sql, {
            'issue_id': issue_id,
            'subscriber_id': subscriber_id,
            'message_id': message_id,
            'sent_at': sent_at
        })
        return result.rowcount > 0

    def count_issue_deliveries(self, issue_id):
        sql = f'SELECT COUNT(*) AS count FROM {self.tables["Delivery"]} WHERE issue_id = :issue_id'
        return self.query_one(sql, {'issue_id': issue_id})['count']

    def set_subscriber_status(self, subscriber_id, status):
        sql = f'UPDATE {self.tables["Subscriber"]} SET status = :status WHERE id = :id'
        self.execute(sql, {'id': subscriber_id, 'status': status})

    # ------------------------------------------------------------
    # agent events

    def fetch_due_agent_events(self, now, limit):
        sql = f"""
        SELECT id, event_type, source_agent, payload, status, created_at, expires_at
        FROM {self.tables["AgentEvent"]}
        WHERE status = 'pending' AND expires_at < :now
        ORDER BY created_at ASC, id ASC
        LIMIT :limit
        """
        return self.query(sql, {'now': now, 'limit': limit})

    def mark_agent_event(self, event_id, status):
        sql = f'UPDATE {self.tables["AgentEvent"]} SET status = :status WHERE id = :id'
        self.execute(sql, {'id': event_id, 'status': status})
