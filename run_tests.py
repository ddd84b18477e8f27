#!/usr/bin/env python3
"""
Test runner for the table fetch planner

Usage:
    python run_tests.py                    # Run all tests
    python run_tests.py partition_planner  # Run only partition planner tests
    python run_tests.py fetch_cycle        # Run only fetch cycle tests
"""

import unittest
import sys
import os

# Add the current directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

TEST_MODULES = [
    'config', 'connection_pool', 'cycle_lock', 'database_utils', 'fetch_cycle', 'incremental',
    'partition_planner', 'query_generator', 'range_probe', 'sink', 'state_store', 'tasks',
]


def run_tests(test_module=None):
    """Run tests for the specified module or all tests if none specified"""

    if test_module:
        suite = unittest.TestLoader().loadTestsFromName(f'tests.test_{test_module}')
    else:
        loader = unittest.TestLoader()
        suite = loader.discover('tests', pattern='test_*.py')

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print(f"\n{'='*50}")
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    if result.testsRun:
        passed = result.testsRun - len(result.failures) - len(result.errors)
        print(f"Success rate: {passed / result.testsRun * 100:.1f}%")
    print(f"{'='*50}")

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    test_module = sys.argv[1] if len(sys.argv) > 1 else None

    if test_module and test_module not in TEST_MODULES:
        print(f"Error: Unknown test module '{test_module}'")
        print(f"Available modules: {', '.join(TEST_MODULES)}")
        sys.exit(1)

    sys.exit(run_tests(test_module))
