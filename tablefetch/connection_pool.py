#!/usr/bin/env python3
"""
Source database connections for metadata queries
A process-wide pool, guarded by a circuit breaker so an unreachable source is
not hammered by every fetch cycle
"""

import threading
import time
import uuid
import psycopg2
import vertica_python
from psycopg2 import pool
from contextlib import contextmanager
from typing import Any, Dict, Optional
from dataclasses import dataclass
from enum import Enum

from tablefetch.enhanced_logger import logger

POSTGRES_TYPES = ('postgresql', 'greenplum')

DRIVER_ERRORS = (psycopg2.Error, vertica_python.errors.Error)


class ConnectionPoolError(Exception):
    """No connection to the source can be handed out"""


class BreakerState(Enum):
    CLOSED = "closed"        # connections handed out
    OPEN = "open"            # connections refused until the cool-down passed
    HALF_OPEN = "half_open"  # trial connections after the cool-down


@dataclass
class SourceConfig:
    """Where the metadata queries run"""
    db_type: str
    host: str
    port: int
    username: str
    password: str
    database: str
    connect_timeout: int = 30
    max_connections: int = 4

    @classmethod
    def from_dict(cls, db_config: Dict[str, Any]) -> 'SourceConfig':
        db_type = db_config.get('db_type', 'postgresql')
        default_port = 5433 if db_type.lower() == 'vertica' else 5432
        return cls(
            db_type=db_type,
            host=db_config['host'],
            port=int(db_config.get('port', default_port)),
            username=db_config['username'],
            password=db_config['password'],
            database=db_config['database'],
            max_connections=int(db_config.get('max_connections', 4))
        )

    @property
    def is_postgres(self) -> bool:
        return self.db_type.lower() in POSTGRES_TYPES


class CircuitBreaker:
    """
    Counts consecutive connection failures

    After `failure_threshold` failures the breaker opens and refuses
    connections for `cooldown` seconds. The first request after that is let
    through; `recovery_successes` successes close the breaker again, a single
    failure re-opens it.
    """

    def __init__(self, failure_threshold: int = 5, cooldown: float = 30.0,
                 recovery_successes: int = 2):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self.recovery_successes = recovery_successes

        self.state = BreakerState.CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at = 0.0
        self._lock = threading.Lock()

    def allow(self) -> bool:
        with self._lock:
            if self.state != BreakerState.OPEN:
                return True
            if time.time() - self.opened_at < self.cooldown:
                return False
            self.state = BreakerState.HALF_OPEN
            self.successes = 0
            logger.info("Circuit breaker half-open, trying the source again")
            return True

    def succeeded(self):
        with self._lock:
            self.failures = 0
            if self.state == BreakerState.HALF_OPEN:
                self.successes += 1
                if self.successes >= self.recovery_successes:
                    self.state = BreakerState.CLOSED
                    logger.circuit_breaker_closed(self.successes)

    def failed(self, error: Exception):
        with self._lock:
            self.failures += 1
            if self.state == BreakerState.HALF_OPEN:
                self.state = BreakerState.OPEN
                self.opened_at = time.time()
                logger.warning(f"Circuit breaker re-opened, trial connection failed: {error}")
            elif self.state == BreakerState.CLOSED and self.failures >= self.failure_threshold:
                self.state = BreakerState.OPEN
                self.opened_at = time.time()
                logger.circuit_breaker_opened(self.failures, self.cooldown)


class SourceConnectionPool:
    """
    Pooled PostgreSQL/Greenplum connections, per-use Vertica connections

    Connections are lent for the length of a `with connection()` block and
    never held across cycles.
    """

    def __init__(self, config: SourceConfig):
        self.config = config
        self.breaker = CircuitBreaker()
        self._lock = threading.Lock()
        self._lent = 0
        self._pg_pool = None

        if config.is_postgres:
            self._pg_pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=config.max_connections,
                host=config.host,
                port=config.port,
                database=config.database,
                user=config.username,
                password=config.password,
                connect_timeout=config.connect_timeout
            )
        elif config.db_type.lower() != 'vertica':
            raise ValueError(f"Unsupported database type: {config.db_type}")

        logger.set_max_connections(config.max_connections)
        logger.info(f"Opened {config.db_type} source pool for {config.host}:{config.port} "
                    f"(max {config.max_connections} connections)")

    @property
    def lent(self) -> int:
        return self._lent

    def _checkout(self):
        if self._pg_pool is not None:
            return self._pg_pool.getconn()
        return vertica_python.connect(
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
            user=self.config.username,
            password=self.config.password,
            connection_timeout=self.config.connect_timeout
        )

    def _checkin(self, conn):
        if self._pg_pool is not None:
            self._pg_pool.putconn(conn)
        else:
            conn.close()

    @contextmanager
    def connection(self):
        """
        Lend one connection

        Raises:
            ConnectionPoolError: the circuit breaker is open
        """
        if not self.breaker.allow():
            raise ConnectionPoolError(f"Circuit breaker open, source {self.config.host} "
                                      f"refused for {self.breaker.cooldown}s")

        conn = None
        conn_id = uuid.uuid4().hex[:8]
        lent_at = time.time()
        try:
            with self._lock:
                conn = self._checkout()
                self._lent += 1
            logger.connection_acquired(conn_id, self._lent)
            yield conn
            self.breaker.succeeded()
        except DRIVER_ERRORS as e:
            logger.connection_error(str(e))
            self.breaker.failed(e)
            raise
        finally:
            if conn is not None:
                with self._lock:
                    self._lent -= 1
                    try:
                        self._checkin(conn)
                    except DRIVER_ERRORS + (pool.PoolError,) as e:
                        logger.error(f"Could not return connection {conn_id}: {e}")
                logger.connection_released(conn_id, time.time() - lent_at)

    def close(self):
        with self._lock:
            if self._pg_pool is not None:
                self._pg_pool.closeall()
                self._pg_pool = None
        logger.info(f"Closed source pool for {self.config.host}:{self.config.port}")


_source_pool: Optional[SourceConnectionPool] = None
_source_pool_lock = threading.Lock()


def get_source_pool() -> SourceConnectionPool:
    if _source_pool is None:
        raise ConnectionPoolError("Source pool not configured, call configure_source_pool first")
    return _source_pool


def configure_source_pool(config: SourceConfig) -> SourceConnectionPool:
    """Open the process-wide pool, replacing (and closing) any previous one"""
    global _source_pool
    with _source_pool_lock:
        if _source_pool is not None:
            _source_pool.close()
        _source_pool = SourceConnectionPool(config)
        return _source_pool


def close_source_pool():
    global _source_pool
    with _source_pool_lock:
        if _source_pool is not None:
            _source_pool.close()
            _source_pool = None


@contextmanager
def source_connection():
    """
    Lend a connection from the process-wide pool

    Usage:
        with source_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT MIN(id), MAX(id), COUNT(*) FROM sales.orders")
    """
    with get_source_pool().connection() as conn:
        yield conn
