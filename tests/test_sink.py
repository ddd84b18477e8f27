import unittest
import os
import sys
import json
import tempfile
from unittest.mock import MagicMock, call

# Add the project root to the path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tablefetch.errors import EmissionError
from tablefetch.partition_planner import split_range
from tablefetch.query_generator import QueryGenerator
from tablefetch.sink import CelerySink, DirectorySink, MemorySink, WorkUnit


def make_units(count=3):
    queries = QueryGenerator('sales', 'orders', 'id').generate(
        split_range(0, 99, count), 100, fragment_id='frag-1')
    return [WorkUnit.from_query(q) for q in queries]


class TestMemorySink(unittest.TestCase):
    """Test cases for staging, commit and rollback"""

    def test_nothing_delivered_before_commit(self):
        sink = MemorySink()
        for unit in make_units():
            sink.emit(unit)
        self.assertEqual(sink.delivered, [])
        self.assertEqual(len(sink.pending), 3)

    def test_commit_delivers_in_order(self):
        sink = MemorySink()
        units = make_units()
        for unit in units:
            sink.emit(unit)
        self.assertEqual(sink.commit(), 3)
        self.assertEqual(sink.delivered, units)
        self.assertEqual(sink.pending, [])

    def test_rollback_discards(self):
        sink = MemorySink()
        for unit in make_units():
            sink.emit(unit)
        self.assertEqual(sink.rollback(), 3)
        self.assertEqual(sink.commit(), 0)
        self.assertEqual(sink.delivered, [])

    def test_failed_delivery_keeps_pending(self):
        sink = MemorySink()
        sink._deliver = MagicMock(side_effect=RuntimeError("queue full"))
        for unit in make_units():
            sink.emit(unit)
        with self.assertRaises(EmissionError):
            sink.commit()
        self.assertEqual(len(sink.pending), 3)
        sink.rollback()
        self.assertEqual(sink.pending, [])

    def test_work_unit_payload(self):
        unit = make_units(1)[0]
        self.assertIsInstance(unit.payload, bytes)
        self.assertEqual(unit.sql, "SELECT * FROM sales.orders WHERE id BETWEEN 0 AND 99")
        self.assertEqual(unit.attributes['fragment.sql'], unit.sql)


class TestDirectorySink(unittest.TestCase):
    """Test cases for the directory sink"""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.output_dir = os.path.join(self.temp_dir.name, 'out')

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_writes_sql_and_attributes(self):
        sink = DirectorySink(self.output_dir)
        for unit in make_units(2):
            sink.emit(unit)
        self.assertFalse(os.path.exists(self.output_dir))
        sink.commit()

        self.assertEqual(sorted(os.listdir(self.output_dir)), [
            'frag-1_0000.json', 'frag-1_0000.sql', 'frag-1_0001.json', 'frag-1_0001.sql'
        ])
        with open(os.path.join(self.output_dir, 'frag-1_0001.sql'), encoding='utf-8') as f:
            self.assertEqual(f.read(), "SELECT * FROM sales.orders WHERE id BETWEEN 50 AND 99")
        with open(os.path.join(self.output_dir, 'frag-1_0001.json'), encoding='utf-8') as f:
            self.assertEqual(json.load(f)['fragment.index'], '1')

    def test_unwritable_directory(self):
        blocker = os.path.join(self.temp_dir.name, 'blocker')
        with open(blocker, 'w') as f:
            f.write('not a directory')
        sink = DirectorySink(blocker)
        sink.emit(make_units(1)[0])
        with self.assertRaises(EmissionError):
            sink.commit()


class TestCelerySink(unittest.TestCase):
    """Test cases for Celery dispatch"""

    def test_dispatches_in_order(self):
        app = MagicMock()
        sink = CelerySink(app)
        units = make_units(3)
        for unit in units:
            sink.emit(unit)
        sink.commit()

        app.send_task.assert_has_calls([
            call('tablefetch.extract_fragment', args=[u.sql], kwargs={'attributes': u.attributes},
                 queue='extract_queries')
            for u in units
        ])
        self.assertEqual(app.send_task.call_count, 3)

    def test_broker_failure(self):
        app = MagicMock()
        app.send_task.side_effect = ConnectionError("broker unreachable")
        sink = CelerySink(app, queue='custom')
        sink.emit(make_units(1)[0])
        with self.assertRaises(EmissionError):
            sink.commit()


if __name__ == '__main__':
    unittest.main()
