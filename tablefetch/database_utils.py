"""
Database utility functions for the table fetch planner.

This module contains the metadata query executor shared by the range probe
and the incremental cursor.
"""

from typing import Any, Callable, ContextManager, List, Sequence

from tablefetch.connection_pool import POSTGRES_TYPES, source_connection
from tablefetch.enhanced_logger import logger


def timeout_statement(db_type: str, timeout_seconds: int):
    """
    Session statement that caps query run time, or None when there is no limit

    Args:
        db_type: Database type ('postgresql', 'greenplum', 'vertica')
        timeout_seconds: Limit in seconds, 0 for no limit
    """
    if timeout_seconds <= 0:
        return None
    if db_type.lower() in POSTGRES_TYPES:
        return f"SET statement_timeout = {int(timeout_seconds) * 1000}"
    if db_type.lower() == 'vertica':
        return f"SET SESSION RUNTIMECAP '{int(timeout_seconds)} seconds'"
    raise ValueError(f"Unsupported database type for query timeout: {db_type}")


class QueryExecutor:
    """
    Executes parameterless metadata queries with a timeout

    A connection is taken from the factory for exactly one query and released
    straight afterwards.
    """

    def __init__(self, db_type: str = 'postgresql', timeout: int = 0,
                 connection_factory: Callable[[], ContextManager[Any]] = source_connection):
        self.db_type = db_type
        self.timeout = timeout
        self.connection_factory = connection_factory

    def execute(self, sql: str) -> List[Sequence[Any]]:
        """
        Run a query and return all of its rows

        Driver errors propagate to the caller unchanged.
        """
        with self.connection_factory() as conn:
            cursor = conn.cursor()
            try:
                set_timeout = timeout_statement(self.db_type, self.timeout)
                if set_timeout:
                    cursor.execute(set_timeout)
                logger.debug(f"Executing {sql}")
                cursor.execute(sql)
                return list(cursor.fetchall())
            finally:
                cursor.close()
