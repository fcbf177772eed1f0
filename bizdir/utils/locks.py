import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class StoreLockManager:
    """
    Process-local locks keyed by store name.

    Import jobs hold the lock for a store while they check a row for
    duplicates and insert it, so two jobs running in the same process cannot
    both accept the same business. Cross-process exclusion is left to the
    database.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, store_name: str) -> threading.Lock:
        """Get or create a lock for a specific store."""
        with cls._global_lock:
            if store_name not in cls._locks:
                cls._locks[store_name] = threading.Lock()
            return cls._locks[store_name]

    @classmethod
    @contextmanager
    def acquire(cls, store_name: str):
        """Context manager to acquire and release a store lock."""
        lock = cls.get_lock(store_name)
        lock.acquire()
        logger.debug("Acquired lock for store '%s'", store_name)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released lock for store '%s'", store_name)
