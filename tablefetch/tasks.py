#!/usr/bin/env python3
"""
Celery tasks for the table fetch planner
Each trigger runs one fetch cycle; cycles that yield are retried after a back-off
"""

import os
from typing import Any, Dict, Optional

import redis

from tablefetch.celery_config import CeleryConfig, celery_app
from tablefetch.config import FetchConfig
from tablefetch.connection_pool import ConnectionPoolError, SourceConfig, configure_source_pool, get_source_pool
from tablefetch.cycle_lock import create_cycle_lock
from tablefetch.database_utils import QueryExecutor
from tablefetch.enhanced_logger import logger
from tablefetch.errors import ConfigurationError
from tablefetch.fetch_cycle import TableFetchPlanner
from tablefetch.incremental import get_state_key
from tablefetch.sink import CelerySink, DirectorySink
from tablefetch.state_store import create_cursor_store

CYCLE_BACKOFF_SECONDS = int(os.getenv('TABLEFETCH_BACKOFF_SECONDS', '60'))
CYCLE_MAX_RETRIES = int(os.getenv('TABLEFETCH_MAX_RETRIES', '5'))

# Workers of every host must share this Redis for cycle locks
LOCK_URL = os.getenv('TABLEFETCH_LOCK_URL', CeleryConfig.broker_url)

_lock_client: Optional[redis.Redis] = None


def get_lock_client() -> redis.Redis:
    """Redis client holding the cycle locks of all workers"""
    global _lock_client
    if _lock_client is None:
        _lock_client = redis.Redis.from_url(LOCK_URL)
    return _lock_client


def ensure_connection_pool(db_config: Dict[str, Any]):
    """Open the worker's source pool on first use"""
    try:
        return get_source_pool()
    except ConnectionPoolError:
        return configure_source_pool(SourceConfig.from_dict(db_config))


def build_planner(fetch_config: FetchConfig, db_config: Dict[str, Any],
                  output_dir: Optional[str] = None,
                  lock_client: Optional[redis.Redis] = None) -> TableFetchPlanner:
    """
    Wire executor, sink, cursor store and cycle lock for a run

    Without a lock client the cycle lock is a Redis lock only when the cursor
    lives in Redis, otherwise it covers this process alone.
    """
    ensure_connection_pool(db_config)
    executor = QueryExecutor(db_type=db_config.get('db_type', 'postgresql'),
                             timeout=fetch_config.query_timeout)
    sink = DirectorySink(output_dir) if output_dir else CelerySink(celery_app)
    store = create_cursor_store(fetch_config)
    lock = create_cycle_lock(fetch_config, store, client=lock_client)
    return TableFetchPlanner(fetch_config, executor, sink, store=store, lock=lock)


@celery_app.task(bind=True, name='tablefetch.tasks.run_fetch_cycle', max_retries=CYCLE_MAX_RETRIES)
def run_fetch_cycle(self, table_config, db_config, output_dir=None):
    """
    Run one fetch cycle for a table

    Args:
        table_config (dict): Fetch options, see tablefetch.config.OPTIONS
        db_config (dict): Source database connection details
        output_dir (str): Write work units to this directory instead of dispatching them

    Returns:
        dict: Cycle summary
    """
    try:
        fetch_config = FetchConfig.from_dict(table_config).validate()
    except ConfigurationError as e:
        # Never retried: needs an operator to fix the options
        logger.error(f"Rejected fetch configuration: {e}")
        return {
            'table_name': table_config.get('table_name'),
            'status': 'invalid',
            'error': str(e),
            'problems': e.problems
        }

    logger.info(f"Starting fetch cycle for {fetch_config.schema}.{fetch_config.table_name} "
                f"(Celery task: {self.request.id})")

    planner = build_planner(fetch_config, db_config, output_dir, lock_client=get_lock_client())
    result = planner.run_cycle()

    if result.should_yield:
        logger.warning(f"Fetch cycle yielded, retrying in {CYCLE_BACKOFF_SECONDS}s: {result.error}")
        raise self.retry(exc=result.error, countdown=CYCLE_BACKOFF_SECONDS)

    return result.to_dict()


@celery_app.task(name='tablefetch.tasks.reset_cursor')
def reset_cursor(table_config):
    """
    Forget the recorded high-water-mark of a table so the next cycle starts over

    Args:
        table_config (dict): Fetch options of the table

    Returns:
        dict: Reset result
    """
    try:
        fetch_config = FetchConfig.from_dict(table_config).validate()
    except ConfigurationError as e:
        return {'status': 'error', 'error': str(e)}

    if not fetch_config.is_incremental:
        return {'status': 'error', 'error': 'Table is not fetched incrementally'}

    state_key = get_state_key(fetch_config.table_name, fetch_config.max_value_column)
    store = create_cursor_store(fetch_config)
    lock = create_cycle_lock(fetch_config, store, client=get_lock_client())
    if not lock.acquire(fetch_config.lock_timeout):
        return {'status': 'error', 'error': f'A fetch cycle for {state_key} is still running'}
    try:
        removed = store.delete(state_key)
    finally:
        lock.release()
    logger.info(f"Reset cursor {state_key} (existed: {removed})")
    return {'status': 'reset', 'state_key': state_key, 'existed': removed}
