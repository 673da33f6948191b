import os
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the background worker.

    All timing parameters are in seconds.
    Connection parameters for database access.
    """
    lock_ttl_sec: int = 300
    batch_size: int = 500
    expected_send_latency_sec: float = 0.25
    agent_event_batch_size: int = 50
    cron_secret: str = None

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'vera'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'vera_'

    @property
    def expected_batch_duration_sec(self) -> float:
        """Wall-clock estimate for one full batch of deliveries.
        """
        return self.batch_size * self.expected_send_latency_sec

    def validate(self) -> 'WorkerConfig':
        """Check the lease outlives a full batch.

        Returns
            The config itself, for chaining

        Raises
            ValueError: If any limit is out of range
        """
        if self.batch_size < 1:
            raise ValueError(f'batch_size must be positive, got {self.batch_size}')
        if self.agent_event_batch_size < 1:
            raise ValueError(f'agent_event_batch_size must be positive, got {self.agent_event_batch_size}')
        if self.lock_ttl_sec <= 0:
            raise ValueError(f'lock_ttl_sec must be positive, got {self.lock_ttl_sec}')
        if self.lock_ttl_sec <= self.expected_batch_duration_sec:
            raise ValueError(
                f'lock_ttl_sec ({self.lock_ttl_sec}s) must exceed the expected batch duration '
                f'({self.batch_size} x {self.expected_send_latency_sec}s = {self.expected_batch_duration_sec:.1f}s)')
        return self

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Build config from VERA_* environment variables.
        """
        return cls(
            lock_ttl_sec=int(os.getenv('VERA_LOCK_TTL', '300')),
            batch_size=int(os.getenv('VERA_BATCH_SIZE', '500')),
            expected_send_latency_sec=float(os.getenv('VERA_SEND_LATENCY', '0.25')),
            agent_event_batch_size=int(os.getenv('VERA_AGENT_EVENT_BATCH', '50')),
            cron_secret=os.getenv('VERA_CRON_SECRET') or None,
            host=os.getenv('VERA_SQL_HOST', 'localhost'),
            port=int(os.getenv('VERA_SQL_PORT', '5432')),
            dbname=os.getenv('VERA_SQL_DATABASE', 'vera'),
            user=os.getenv('VERA_SQL_USERNAME', 'postgres'),
            password=os.getenv('VERA_SQL_PASSWORD', 'postgres'),
            appname=os.getenv('VERA_SQL_APPNAME', 'vera_'),
        )


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )
