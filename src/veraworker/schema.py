import logging

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Lock', 'Job', 'Campaign', 'Recipient', 'Issue', 'Subscriber', 'Delivery', 'AgentEvent']


def get_table_names(appname: str = 'vera_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Lock': f'{appname}distributed_locks',
        'Job': f'{appname}jobs_queue',
        'Campaign': f'{appname}cold_email_campaigns',
        'Recipient': f'{appname}cold_email_recipients',
        'Issue': f'{appname}newsletter_issues',
        'Subscriber': f'{appname}newsletter_subscribers',
        'Delivery': f'{appname}newsletter_deliveries',
        'AgentEvent': f'{appname}agent_events',
    }


def verify_tables_exist(engine: Engine, appname: str = 'vera_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    status = {}

    with engine.connect() as conn:
        for table_key in TABLE_KEYS:
            result = conn.execute(text("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_schema = 'public'
                    AND table_name = :table_name
                )
            """), {'table_name': tables[table_key]})
            status[table_key] = result.scalar()

    return status


def _create_queue_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create lock and job queue tables.
    """
    Lock = tables['Lock']
    Job = tables['Job']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Lock} (
    lock_name varchar not null,
    instance_id varchar not null,
    expires_at timestamp with time zone not null,
    primary key (lock_name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Job} (
    id bigserial primary key,
    job_type varchar not null,
    workspace_id varchar,
    payload jsonb not null default '{{}}'::jsonb,
    status varchar not null default 'pending',
    created_at timestamp with time zone not null default now(),
    started_at timestamp with time zone,
    completed_at timestamp with time zone,
    result jsonb,
    error_message text
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Job}_pending ON {Job}(job_type, status, created_at)'))

        conn.commit()

    logger.debug(f'Queue tables verified: {Lock}, {Job}')


def _create_domain_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create the campaign, newsletter and agent event tables the processors work on.
    """
    Campaign = tables['Campaign']
    Recipient = tables['Recipient']
    Issue = tables['Issue']
    Subscriber = tables['Subscriber']
    Delivery = tables['Delivery']
    AgentEvent = tables['AgentEvent']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Campaign} (
    id bigserial primary key,
    workspace_id varchar,
    name varchar,
    subject varchar not null,
    body_template text not null,
    from_name varchar,
    from_email varchar,
    reply_to varchar,
    status varchar not null default 'draft',
    sent_count integer not null default 0,
    recipient_count integer not null default 0,
    updated_at timestamp with time zone
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Recipient} (
    id bigserial primary key,
    campaign_id bigint not null,
    email varchar not null,
    first_name varchar,
    last_name varchar,
    company varchar,
    variables jsonb,
    status varchar not null default 'pending',
    sent_at timestamp with time zone,
    message_id varchar,
    created_at timestamp with time zone not null default now()
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Recipient}_campaign ON {Recipient}(campaign_id, status)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Issue} (
    id bigserial primary key,
    newsletter_id bigint not null,
    workspace_id varchar,
    subject varchar not null,
    body_html text,
    body_markdown text,
    from_email varchar,
    status varchar not null default 'draft',
    sent_at timestamp with time zone,
    recipient_count integer not null default 0,
    updated_at timestamp with time zone
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Subscriber} (
    id bigserial primary key,
    newsletter_id bigint not null,
    email varchar not null,
    status varchar not null default 'active'
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Subscriber}_newsletter ON {Subscriber}(newsletter_id, status, id)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Delivery} (
    issue_id bigint not null,
    subscriber_id bigint not null,
    message_id varchar,
    sent_at timestamp with time zone not null,
    primary key (issue_id, subscriber_id)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {AgentEvent} (
    id bigserial primary key,
    event_type varchar not null,
    source_agent varchar,
    payload jsonb,
    status varchar not null default 'pending',
    created_at timestamp with time zone not null default now(),
    expires_at timestamp with time zone
);
        """))

        conn.commit()

    logger.debug(f'Domain tables verified: {Campaign}, {Recipient}, {Issue}, {Subscriber}, {Delivery}, {AgentEvent}')


def ensure_database_ready(engine: Engine, appname: str = 'vera_') -> None:
    """Ensure database has all required tables with correct structure.

    This function checks which tables exist and creates any missing tables.
    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)

    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_queue_tables(engine, tables)
        _create_domain_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
