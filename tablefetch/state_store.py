#!/usr/bin/env python3
"""
Cursor stores for incremental fetching
A flat local key-value file for single nodes and a Redis hash shared by a cluster
"""

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis

from tablefetch.enhanced_logger import logger

DEFAULT_REDIS_HASH = "tablefetch:cursors"


class CursorStore(ABC):
    """Key-value store holding the last emitted high-water-mark per cursor key"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key was never written"""

    @abstractmethod
    def set(self, key: str, value: str) -> bool:
        """Store the value; returns True on success"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Forget the key; returns True when something was removed"""


class FileCursorStore(CursorStore):
    """
    Cursor store backed by a local `key=value` file

    Writes go to a temporary file in the same directory which then replaces
    the original, so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if not os.path.exists(self.path):
            return values
        if os.path.isdir(self.path):
            raise IsADirectoryError(f"Cursor state path is a directory: {self.path}")

        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                key, sep, value = line.partition('=')
                if sep:
                    values[key.strip()] = value.strip()
        return values

    def _write_all(self, values: Dict[str, str]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.cursor-', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write("# tablefetch cursor state\n")
                for key in sorted(values):
                    f.write(f"{key}={values[key]}\n")
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def set(self, key: str, value: str) -> bool:
        if '\n' in value or '\r' in value:
            raise ValueError(f"Cursor values must be single-line: {value!r}")
        with self._lock:
            values = self._read_all()
            values[key] = value
            self._write_all(values)
        logger.debug(f"Stored cursor {key}={value!r} in {self.path}")
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            values = self._read_all()
            if key not in values:
                return False
            del values[key]
            self._write_all(values)
        return True


class RedisCursorStore(CursorStore):
    """
    Cursor store kept in a Redis hash so every worker of a cluster sees it
    """

    def __init__(self, client: redis.Redis, hash_name: str = DEFAULT_REDIS_HASH):
        self.client = client
        self.hash_name = hash_name

    @classmethod
    def from_url(cls, url: str, hash_name: str = DEFAULT_REDIS_HASH) -> 'RedisCursorStore':
        return cls(redis.Redis.from_url(url, decode_responses=True), hash_name)

    def get(self, key: str) -> Optional[str]:
        value = self.client.hget(self.hash_name, key)
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        return value

    def set(self, key: str, value: str) -> bool:
        self.client.hset(self.hash_name, key, value)
        logger.debug(f"Stored cursor {key}={value!r} in redis hash {self.hash_name}")
        return True

    def delete(self, key: str) -> bool:
        return bool(self.client.hdel(self.hash_name, key))


def create_cursor_store(config) -> Optional[CursorStore]:
    """Cursor store selected by the config, or None when the fetch is not incremental"""
    if config.state_file:
        return FileCursorStore(config.state_file)
    if config.state_url:
        return RedisCursorStore.from_url(config.state_url)
    return None
