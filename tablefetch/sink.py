#!/usr/bin/env python3
"""
Work unit sinks
Receive generated queries as addressable work units and deliver them on commit
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from tablefetch.enhanced_logger import logger
from tablefetch.errors import EmissionError
from tablefetch.query_generator import GeneratedQuery


@dataclass(frozen=True)
class WorkUnit:
    """UTF-8 encoded SQL payload plus its routing attributes"""
    payload: bytes
    attributes: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_query(cls, query: GeneratedQuery) -> 'WorkUnit':
        return cls(payload=query.sql.encode('utf-8'), attributes=dict(query.attributes))

    @property
    def sql(self) -> str:
        return self.payload.decode('utf-8')


class WorkUnitSink(ABC):
    """
    Stages emitted units and hands them off in emission order on commit

    Units staged since the last commit are dropped by rollback. Subclasses
    implement `_deliver`, which receives the staged units in order.
    """

    def __init__(self):
        self._pending: List[WorkUnit] = []
        self._lock = threading.Lock()

    def emit(self, unit: WorkUnit):
        with self._lock:
            self._pending.append(unit)

    @property
    def pending(self) -> List[WorkUnit]:
        with self._lock:
            return list(self._pending)

    def commit(self) -> int:
        """
        Deliver every staged unit

        Returns:
            Number of units delivered

        Raises:
            EmissionError: delivery failed; the staged units are kept for rollback
        """
        with self._lock:
            units = list(self._pending)
        try:
            self._deliver(units)
        except EmissionError:
            raise
        except Exception as e:
            raise EmissionError(f"Failed to deliver {len(units)} work units: {e}") from e
        with self._lock:
            self._pending.clear()
        return len(units)

    def rollback(self) -> int:
        """Drop the staged units; returns how many were dropped"""
        with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
        if dropped:
            logger.warning(f"Rolled back {dropped} staged work units")
        return dropped

    @abstractmethod
    def _deliver(self, units: List[WorkUnit]):
        """Hand the units off, all or nothing where the transport allows it"""


class MemorySink(WorkUnitSink):
    """Keeps delivered units in memory"""

    def __init__(self):
        super().__init__()
        self.delivered: List[WorkUnit] = []

    def _deliver(self, units: List[WorkUnit]):
        self.delivered.extend(units)


class DirectorySink(WorkUnitSink):
    """
    Writes each unit as `<fragment id>_<index>.sql` with a `.json` attribute file

    Files of a failed delivery are removed again so a commit is all or nothing.
    """

    def __init__(self, output_dir):
        super().__init__()
        self.output_dir = Path(output_dir)

    def _file_stem(self, unit: WorkUnit, position: int) -> str:
        fragment_id = unit.attributes.get('fragment.identifier', 'unit')
        index = int(unit.attributes.get('fragment.index', position))
        return f"{fragment_id}_{index:04d}"

    def _deliver(self, units: List[WorkUnit]):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        try:
            for position, unit in enumerate(units):
                stem = self._file_stem(unit, position)
                sql_file = self.output_dir / f"{stem}.sql"
                attributes_file = self.output_dir / f"{stem}.json"
                sql_file.write_bytes(unit.payload)
                written.append(sql_file)
                attributes_file.write_text(json.dumps(unit.attributes, indent=2, sort_keys=True),
                                           encoding='utf-8')
                written.append(attributes_file)
        except OSError:
            for path in written:
                try:
                    os.unlink(path)
                except OSError as e:
                    logger.error(f"Could not remove partially written {path}: {e}")
            raise
        logger.info(f"Wrote {len(units)} work units to {self.output_dir}")


class CelerySink(WorkUnitSink):
    """
    Dispatches each unit as a Celery task message to the extraction workers
    """

    def __init__(self, app, task_name: str = 'tablefetch.extract_fragment',
                 queue: Optional[str] = 'extract_queries'):
        super().__init__()
        self.app = app
        self.task_name = task_name
        self.queue = queue

    def _deliver(self, units: List[WorkUnit]):
        for unit in units:
            self.app.send_task(
                self.task_name,
                args=[unit.sql],
                kwargs={'attributes': unit.attributes},
                queue=self.queue
            )
        logger.info(f"Dispatched {len(units)} work units to {self.task_name} on queue {self.queue}")
