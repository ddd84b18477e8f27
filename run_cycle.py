#!/usr/bin/env python3
"""
Run a single fetch cycle from the command line

Fetch options come from TABLEFETCH_* environment variables (for example
TABLEFETCH_TABLE_NAME, TABLEFETCH_SCHEMA, TABLEFETCH_SPLIT_COLUMN), the source
database from TABLEFETCH_DB_* variables. Set TABLEFETCH_LOCK_URL to share
cycle locks with running workers.

Usage:
    python run_cycle.py                # Dispatch work units to Celery
    python run_cycle.py ./queries      # Write work units to a directory
"""

import json
import os
import sys

import redis

from tablefetch.config import FetchConfig
from tablefetch.connection_pool import close_source_pool
from tablefetch.errors import ConfigurationError
from tablefetch.tasks import build_planner


def db_config_from_env():
    """Source database settings from the environment"""
    return {
        'db_type': os.getenv('TABLEFETCH_DB_TYPE', 'postgresql'),
        'host': os.getenv('TABLEFETCH_DB_HOST', 'localhost'),
        'port': int(os.getenv('TABLEFETCH_DB_PORT', '5432')),
        'database': os.getenv('TABLEFETCH_DB_NAME', 'postgres'),
        'username': os.getenv('TABLEFETCH_DB_USER', 'postgres'),
        'password': os.getenv('TABLEFETCH_DB_PASSWORD', ''),
    }


def main():
    output_dir = sys.argv[1] if len(sys.argv) > 1 else None

    try:
        fetch_config = FetchConfig.from_env().validate()
    except ConfigurationError as e:
        print("❌ Invalid configuration:")
        for problem in e.problems:
            print(f"   • {problem}")
        return 2

    lock_url = os.getenv('TABLEFETCH_LOCK_URL')
    lock_client = redis.Redis.from_url(lock_url) if lock_url else None

    try:
        planner = build_planner(fetch_config, db_config_from_env(), output_dir, lock_client=lock_client)
        result = planner.run_cycle()
    finally:
        close_source_pool()

    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.should_yield else 0


if __name__ == '__main__':
    sys.exit(main())
