import unittest
import os
import sys
import tempfile
from unittest.mock import MagicMock, patch

# Add the project root to the path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tablefetch.config import FetchConfig
from tablefetch.errors import ProbeExecutionError
from tablefetch.cycle_lock import RedisCycleLock, ThreadCycleLock
from tablefetch.fetch_cycle import CycleResult, CycleStatus
from tablefetch.sink import CelerySink, DirectorySink
from tablefetch.state_store import FileCursorStore
from tablefetch.tasks import build_planner, reset_cursor, run_fetch_cycle

DB_CONFIG = {'db_type': 'postgresql', 'host': 'db', 'port': 5432,
             'database': 'dwh', 'username': 'etl', 'password': 'secret'}


class TestRunFetchCycleTask(unittest.TestCase):
    """Test cases for the fetch cycle task"""

    table_config = {'table_name': 'orders', 'schema': 'sales', 'split_column': 'id'}

    def test_invalid_config_is_not_retried(self):
        result = run_fetch_cycle.run({'table_name': 'orders', 'partition_count': 0}, DB_CONFIG)
        self.assertEqual(result['status'], 'invalid')
        self.assertEqual(result['table_name'], 'orders')
        self.assertTrue(result['problems'])

    @patch('tablefetch.tasks.get_lock_client')
    @patch('tablefetch.tasks.build_planner')
    def test_completed_cycle_summary(self, mock_build_planner, mock_lock_client):
        mock_build_planner.return_value.run_cycle.return_value = CycleResult(
            CycleStatus.COMPLETED, 'orders', 'cycle-1', emitted=4, fragment_id='frag-1')

        result = run_fetch_cycle.run(self.table_config, DB_CONFIG, '/tmp/queries')

        self.assertEqual(result['status'], 'completed')
        self.assertEqual(result['emitted'], 4)
        fetch_config, db_config, output_dir = mock_build_planner.call_args.args
        self.assertIsInstance(fetch_config, FetchConfig)
        self.assertEqual(db_config, DB_CONFIG)
        self.assertEqual(output_dir, '/tmp/queries')
        self.assertIs(mock_build_planner.call_args.kwargs['lock_client'], mock_lock_client.return_value)

    @patch('tablefetch.tasks.get_lock_client')
    @patch('tablefetch.tasks.build_planner')
    def test_yielded_cycle_is_retried(self, mock_build_planner, mock_lock_client):
        error = ProbeExecutionError("statement timeout")
        mock_build_planner.return_value.run_cycle.return_value = CycleResult(
            CycleStatus.YIELDED, 'orders', 'cycle-1', error=error)

        # Called outside a worker, retry re-raises the original error
        with self.assertRaises(ProbeExecutionError):
            run_fetch_cycle.run(self.table_config, DB_CONFIG)


class TestBuildPlanner(unittest.TestCase):
    """Test cases for task wiring"""

    fetch_config = FetchConfig(table_name='orders', schema='sales', split_column='id', query_timeout=30)

    @patch('tablefetch.tasks.ensure_connection_pool')
    def test_celery_sink_by_default(self, mock_pool):
        planner = build_planner(self.fetch_config, DB_CONFIG)
        mock_pool.assert_called_once_with(DB_CONFIG)
        self.assertIsInstance(planner.sink, CelerySink)
        self.assertEqual(planner.executor.timeout, 30)
        self.assertEqual(planner.executor.db_type, 'postgresql')

    @patch('tablefetch.tasks.ensure_connection_pool')
    def test_directory_sink(self, mock_pool):
        planner = build_planner(self.fetch_config, DB_CONFIG, '/tmp/queries')
        self.assertIsInstance(planner.sink, DirectorySink)

    @patch('tablefetch.tasks.ensure_connection_pool')
    def test_in_process_lock_without_redis(self, mock_pool):
        planner = build_planner(self.fetch_config, DB_CONFIG)
        self.assertIsInstance(planner.lock, ThreadCycleLock)

    @patch('tablefetch.tasks.ensure_connection_pool')
    def test_redis_lock_shared_by_workers(self, mock_pool):
        client = MagicMock()
        planner = build_planner(self.fetch_config, DB_CONFIG, lock_client=client)
        self.assertIsInstance(planner.lock, RedisCycleLock)
        self.assertIs(planner.lock.client, client)
        self.assertEqual(planner.lock.name, 'tablefetch:lock:sales.orders@!@id')


class TestResetCursorTask(unittest.TestCase):
    """Test cases for the cursor reset task"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_file = os.path.join(self.temp_dir.name, 'cursors.properties')
        self.table_config = {
            'table_name': 'orders', 'schema': 'sales', 'split_column': 'id',
            'max_value_column': 'updated_at', 'state_file': self.state_file, 'lock_timeout': 0,
        }

        patcher = patch('tablefetch.tasks.get_lock_client')
        self.lock_client = patcher.start().return_value
        self.lock_client.lock.return_value.acquire.return_value = True
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_reset_existing_cursor(self):
        FileCursorStore(self.state_file).set('orders@!@updated_at', '42')
        result = reset_cursor.run(self.table_config)
        self.assertEqual(result, {'status': 'reset', 'state_key': 'orders@!@updated_at', 'existed': True})
        self.assertIsNone(FileCursorStore(self.state_file).get('orders@!@updated_at'))

    def test_reset_missing_cursor(self):
        result = reset_cursor.run(self.table_config)
        self.assertFalse(result['existed'])

    def test_reset_requires_incremental_table(self):
        result = reset_cursor.run({'table_name': 'orders', 'schema': 'sales', 'split_column': 'id'})
        self.assertEqual(result['status'], 'error')

    def test_reset_takes_cycle_lock(self):
        reset_cursor.run(self.table_config)
        self.lock_client.lock.assert_called_once_with(
            'tablefetch:lock:orders@!@updated_at', timeout=900, blocking_timeout=0)
        self.lock_client.lock.return_value.release.assert_called_once_with()

    def test_reset_waits_for_running_cycle(self):
        FileCursorStore(self.state_file).set('orders@!@updated_at', '42')
        self.lock_client.lock.return_value.acquire.return_value = False

        result = reset_cursor.run(self.table_config)

        self.assertEqual(result['status'], 'error')
        self.assertIn('still running', result['error'])
        self.assertEqual(FileCursorStore(self.state_file).get('orders@!@updated_at'), '42')

    @patch('tablefetch.tasks.create_cursor_store')
    def test_store_is_not_touched_when_config_invalid(self, mock_store):
        result = reset_cursor.run({'table_name': 'orders'})
        self.assertEqual(result['status'], 'error')
        mock_store.assert_not_called()


if __name__ == '__main__':
    unittest.main()
