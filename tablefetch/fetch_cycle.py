#!/usr/bin/env python3
"""
Table fetch cycle
Probe, plan, generate and emit range-bounded extraction queries for one table,
gated and followed up by the incremental cursor
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from tablefetch.config import FetchConfig
from tablefetch.cycle_lock import create_cycle_lock
from tablefetch.enhanced_logger import logger
from tablefetch.errors import (
    ConfigurationError,
    EmissionError,
    ProbeExecutionError,
    StateReadError,
    StateWriteError,
    TableFetchError,
)
from tablefetch.incremental import IncrementalCursor, IncrementalState
from tablefetch.partition_planner import Partition, PartitionPlanner
from tablefetch.query_generator import GeneratedQuery, QueryGenerator, new_fragment_id
from tablefetch.range_probe import ColumnRange, RangeProbe
from tablefetch.sink import WorkUnit, WorkUnitSink
from tablefetch.state_store import create_cursor_store


class CycleStatus(Enum):
    """Outcome of one fetch cycle"""
    COMPLETED = "completed"  # queries emitted (and cursor committed, if incremental)
    SKIPPED = "skipped"      # cursor unchanged, nothing emitted
    YIELDED = "yielded"      # aborted and rolled back, caller should back off


@dataclass
class CycleResult:
    """Summary of one fetch cycle"""
    status: CycleStatus
    table_name: str
    cycle_id: str
    column_range: Optional[ColumnRange] = None
    partitions: List[Partition] = field(default_factory=list)
    queries: List[GeneratedQuery] = field(default_factory=list)
    emitted: int = 0
    fragment_id: Optional[str] = None
    state: Optional[IncrementalState] = None
    state_committed: bool = False
    error: Optional[TableFetchError] = None

    @property
    def should_yield(self) -> bool:
        return self.status == CycleStatus.YIELDED

    def to_dict(self) -> Dict:
        return {
            'status': self.status.value,
            'table_name': self.table_name,
            'cycle_id': self.cycle_id,
            'emitted': self.emitted,
            'fragment_id': self.fragment_id,
            'current_value': self.state.current_value if self.state else None,
            'new_value': self.state.new_value if self.state else None,
            'state_committed': self.state_committed,
            'error': str(self.error) if self.error else None,
        }


class TableFetchPlanner:
    """
    Runs fetch cycles for one configured table

    Args:
        config: Table fetch configuration; validated on construction
        executor: Metadata query executor (see database_utils.QueryExecutor)
        sink: Work unit sink receiving the generated queries
        store: Cursor store; built from the config when omitted
        lock: Cycle lock (see cycle_lock); a Redis lock when the store lives in
            Redis, otherwise an in-process lock
    """

    def __init__(self, config: FetchConfig, executor, sink: WorkUnitSink, store=None, lock=None):
        self.config = config.validate()
        self.executor = executor
        self.sink = sink

        self.range_probe = RangeProbe(executor, config.schema, config.table_name,
                                      config.split_column, config.to_number)
        self.planner = PartitionPlanner.from_config(config)
        self.generator = QueryGenerator.from_config(config)

        self.cursor = None
        if config.is_incremental:
            store = store if store is not None else create_cursor_store(config)
            self.cursor = IncrementalCursor(store, executor, config)

        self.lock = lock if lock is not None else create_cycle_lock(config, store)

    @property
    def lock_key(self) -> str:
        return self.lock.key

    def run_cycle(self) -> CycleResult:
        """
        Run one cycle, serialized with any other cycle on the same cursor key

        Returns:
            CycleResult; status YIELDED means the cycle was rolled back and
            the caller should back off before the next trigger
        """
        cycle_id = str(uuid.uuid4())
        if not self.lock.acquire(self.config.lock_timeout):
            logger.warning(f"Another cycle for {self.lock_key} is still running, yielding")
            return CycleResult(CycleStatus.YIELDED, self.config.table_name, cycle_id,
                               error=TableFetchError(f"Cycle lock {self.lock_key} busy"))
        try:
            logger.cycle_started(cycle_id, self.config.table_name,
                                 self.cursor.state_key if self.cursor else None)
            return self._run_locked(cycle_id)
        finally:
            logger.clear_cycle_context()
            self.lock.release()

    def _run_locked(self, cycle_id: str) -> CycleResult:
        result = CycleResult(CycleStatus.COMPLETED, self.config.table_name, cycle_id)

        try:
            max_value_predicate = None
            if self.cursor:
                result.state = self.cursor.probe(self.cursor.load())
                if not result.state.has_changed():
                    logger.cycle_skipped(result.state.current_value)
                    result.status = CycleStatus.SKIPPED
                    return result
                max_value_predicate = self.cursor.predicate(result.state)

            result.column_range = self.range_probe.probe(max_value_predicate, self.config.condition)
            result.partitions = self.planner.plan(result.column_range)
            logger.partitions_planned(len(result.partitions), result.column_range.row_count,
                                      result.column_range.low, result.column_range.high)

            result.fragment_id = new_fragment_id()
            result.queries = self.generator.generate(result.partitions, result.column_range.row_count,
                                                     max_value_predicate, result.fragment_id)
            for query in result.queries:
                self.sink.emit(WorkUnit.from_query(query))
                logger.partition_emitted(query.fragment_index)
            result.emitted = self.sink.commit()

        except (StateReadError, ProbeExecutionError, EmissionError) as e:
            self.sink.rollback()
            logger.cycle_failed(str(e))
            result.status = CycleStatus.YIELDED
            result.error = e
            result.emitted = 0
            return result
        except ConfigurationError:
            self.sink.rollback()
            raise

        if self.cursor:
            try:
                self.cursor.commit(result.state)
                result.state_committed = result.state.new_value is not None
            except StateWriteError as e:
                # Queries are out; the next cycle will regenerate overlapping ones
                logger.state_write_hazard(self.cursor.state_key, result.state.new_value, str(e))
                result.error = e

        logger.cycle_completed(result.emitted, result.state.new_value if result.state else None)
        return result
