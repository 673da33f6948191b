__version__ = '0.1.0'

from veraworker.config import WorkerConfig as WorkerConfig
from veraworker.config import build_connection_string as build_connection_string
from veraworker.job import Job as Job
from veraworker.job import JobStatus as JobStatus
from veraworker.job import JobType as JobType
from veraworker.lock import LockManager as LockManager
from veraworker.schema import ensure_database_ready as ensure_database_ready
from veraworker.schema import get_table_names as get_table_names
from veraworker.store import SqlStore as SqlStore
from veraworker.store import Store as Store
