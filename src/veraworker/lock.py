"""Lease-based distributed lock over a shared store.

A lock is one row per name with an owner token and an absolute expiry.
Claims use insert-or-fail; a stale row is taken over with a predicated
update that only matches while the expiry is still in the past, so of two
racing claimants at most one sees a changed row.

There is no renewal: a holder whose work outlasts the TTL can be overtaken
while still running. Choose the TTL well above the expected task duration.
"""
import contextlib
import datetime
import logging
import uuid

from veraworker.exceptions import LockNotAcquired
from veraworker.store import Store

logger = logging.getLogger(__name__)

__all__ = ['LockManager', 'DEFAULT_TTL_SEC']

DEFAULT_TTL_SEC = 300


class LockManager:
    """Acquire, release and scope named task locks.
    """

    def __init__(self, store: Store):
        self.store = store

    def acquire(self, lock_name: str, ttl_sec: int = DEFAULT_TTL_SEC) -> str | None:
        """Try once to claim lock_name.

        Args:
            lock_name: Name of the recurring task
            ttl_sec: Lease length in seconds

        Returns
            Fresh instance id on success, None if the lock is held
        """
        instance_id = str(uuid.uuid4())
        now = datetime.datetime.now(datetime.timezone.utc)
        expires_at = now + datetime.timedelta(seconds=ttl_sec)

        if self.store.insert_lock(lock_name, instance_id, expires_at):
            logger.info(f'Lock {lock_name} acquired by {instance_id}')
            return instance_id

        existing = self.store.get_lock(lock_name)
        if existing is None or existing['expires_at'] >= now:
            logger.debug(f'Lock {lock_name} is held')
            return None

        if self.store.take_over_lock(lock_name, instance_id, expires_at, now):
            logger.warning(f'Lock {lock_name} expired at {existing["expires_at"]}, '
                           f'taken over from {existing["instance_id"]} by {instance_id}')
            return instance_id

        logger.debug(f'Lock {lock_name} takeover lost to a concurrent claimant')
        return None

    def release(self, lock_name: str, instance_id: str) -> bool:
        """Delete the lock if instance_id still owns it.

        Returns
            True if a row was removed, False if another instance owns it now
        """
        released = self.store.delete_lock(lock_name, instance_id)
        if released:
            logger.debug(f'Lock {lock_name} released by {instance_id}')
        else:
            logger.warning(f'Lock {lock_name} no longer owned by {instance_id}, nothing released')
        return released

    def with_lock(self, lock_name: str, fn: callable, ttl_sec: int = DEFAULT_TTL_SEC):
        """Run fn while holding lock_name.

        Returns
            fn's return value, or None without calling fn if the lock is held
        """
        instance_id = self.acquire(lock_name, ttl_sec)
        if not instance_id:
            logger.info(f'Could not acquire lock: {lock_name}')
            return None

        try:
            return fn()
        finally:
            self.release(lock_name, instance_id)

    @contextlib.contextmanager
    def hold(self, lock_name: str, ttl_sec: int = DEFAULT_TTL_SEC):
        """Context manager for lock acquisition.

        Yields
            The instance id owning the lock

        Raises
            LockNotAcquired: If lock cannot be acquired
        """
        instance_id = self.acquire(lock_name, ttl_sec)
        if not instance_id:
            raise LockNotAcquired(f'Lock {lock_name} is held by another instance')
        try:
            yield instance_id
        finally:
            self.release(lock_name, instance_id)
