#!/usr/bin/env python3
"""
Mutual exclusion for fetch cycles
Cycles touching the same cursor must never interleave, within a process and across workers
"""

import threading
from typing import Dict, Optional

import redis

from tablefetch.enhanced_logger import logger
from tablefetch.incremental import get_state_key
from tablefetch.state_store import RedisCursorStore

LOCK_PREFIX = "tablefetch:lock:"
DEFAULT_LOCK_TTL = 900  # Matches the Celery hard time limit of a planning task


def cycle_lock_key(config) -> str:
    """
    Key shared by every cycle that may touch the same cursor

    Incremental cycles lock the cursor's own state key, so tables of the same
    name in different schemas (which share a cursor entry) are serialized too.
    """
    if config.is_incremental:
        return get_state_key(config.table_name, config.max_value_column)
    return get_state_key(f"{config.schema}.{config.table_name}", config.split_column)


# One lock per key, shared by every planner in the process
_cycle_locks: Dict[str, threading.Lock] = {}
_cycle_locks_guard = threading.Lock()


def get_cycle_lock(key: str) -> threading.Lock:
    with _cycle_locks_guard:
        lock = _cycle_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _cycle_locks[key] = lock
        return lock


class ThreadCycleLock:
    """In-process lock; enough when a single process runs every cycle"""

    def __init__(self, key: str):
        self.key = key
        self._lock = get_cycle_lock(key)

    def acquire(self, timeout: float) -> bool:
        return self._lock.acquire(timeout=timeout)

    def release(self):
        self._lock.release()


class RedisCycleLock:
    """
    Lock held in Redis, shared by all workers using the same Redis server

    The lock expires after `ttl` seconds so a killed worker can not block the
    key forever.
    """

    def __init__(self, client: redis.Redis, key: str, ttl: float = DEFAULT_LOCK_TTL):
        self.client = client
        self.key = key
        self.ttl = ttl
        self._lock = None

    @property
    def name(self) -> str:
        return f"{LOCK_PREFIX}{self.key}"

    def acquire(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds; an unreachable Redis counts as not acquired"""
        lock = self.client.lock(self.name, timeout=self.ttl, blocking_timeout=timeout)
        try:
            acquired = lock.acquire()
        except redis.exceptions.RedisError as e:
            logger.error(f"Could not acquire cycle lock {self.name}: {e}")
            return False
        if acquired:
            self._lock = lock
        return bool(acquired)

    def release(self):
        lock, self._lock = self._lock, None
        if lock is None:
            return
        try:
            lock.release()
        except redis.exceptions.LockError as e:
            # Held past its ttl; another cycle may already own the key
            logger.warning(f"Cycle lock {self.name} expired before release: {e}")


def create_cycle_lock(config, store=None, client: Optional[redis.Redis] = None):
    """
    Lock for the config's cycles

    A Redis lock is used when a Redis client is given or the cursor lives in
    a Redis store; otherwise the in-process lock.
    """
    key = cycle_lock_key(config)
    if client is None and isinstance(store, RedisCursorStore):
        client = store.client
    if client is not None:
        return RedisCycleLock(client, key)
    return ThreadCycleLock(key)
