#!/usr/bin/env python3
"""
Enhanced structured logging system for the table fetch planner
Prefixes every message with cycle, table and connection context
"""

import logging
import os
import time
import threading
import psutil
from typing import Optional, Dict
from dataclasses import dataclass


@dataclass
class CycleContext:
    """Cycle-level context for structured logging"""
    cycle_id: str
    table_name: str
    start_time: float
    state_key: Optional[str] = None
    total_partitions: int = 0
    emitted_partitions: int = 0
    total_rows: int = 0


class EnhancedLogger:
    """
    Structured logger with cycle tracking and connection monitoring
    """

    def __init__(self, name: str = "TableFetch"):
        self.logger = logging.getLogger(name)
        self._setup_logger()

        # Thread-local storage for context
        self._local = threading.local()

        self._cycle_contexts: Dict[str, CycleContext] = {}
        self._connection_stats = {
            'active_connections': 0,
            'max_connections': 6,
            'circuit_breaker_state': 'CLOSED',
        }
        self._lock = threading.Lock()

    def _setup_logger(self):
        """Configure structured logging format"""
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '[%(asctime)s] [%(levelname)s] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

            log_file_path = os.environ.get('TABLEFETCH_LOG_FILE', '/tmp/tablefetch.log')
            try:
                os.makedirs(os.path.dirname(log_file_path) or '.', exist_ok=True)
                file_handler = logging.FileHandler(log_file_path, mode='a')
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)
            except OSError as e:
                # If file logging fails, continue with console logging only
                console_handler.emit(logging.LogRecord(
                    name=self.logger.name, level=logging.WARNING, pathname='', lineno=0,
                    msg=f"Failed to setup file logging to {log_file_path}: {e}",
                    args=(), exc_info=None
                ))

            self.logger.setLevel(logging.INFO)

    def set_cycle_context(self, cycle_id: str, table_name: str, state_key: Optional[str] = None):
        """Set cycle-level context for current thread"""
        with self._lock:
            context = CycleContext(
                cycle_id=cycle_id,
                table_name=table_name,
                start_time=time.time(),
                state_key=state_key
            )
            self._cycle_contexts[cycle_id] = context
            self._local.cycle_context = context

    def clear_cycle_context(self):
        """Drop the cycle context of the current thread"""
        context = self.get_cycle_context()
        if context:
            with self._lock:
                self._cycle_contexts.pop(context.cycle_id, None)
        self._local.cycle_context = None

    def get_cycle_context(self) -> Optional[CycleContext]:
        """Get current cycle context"""
        return getattr(self._local, 'cycle_context', None)

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable form"""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{seconds/60:.1f}m"
        else:
            return f"{seconds/3600:.1f}h"

    def _format_rows(self, count: int) -> str:
        """Format row count in human-readable form"""
        if count < 1000:
            return str(count)
        elif count < 1000000:
            return f"{count/1000:.1f}K"
        elif count < 1000000000:
            return f"{count/1000000:.1f}M"
        else:
            return f"{count/1000000000:.1f}B"

    def _get_memory_usage(self) -> str:
        """Get current memory usage"""
        try:
            process = psutil.Process()
            memory_mb = process.memory_info().rss / 1024 / 1024
            return f"{memory_mb:.1f}MB"
        except psutil.Error:
            return "Unknown"

    def _build_context_prefix(self) -> str:
        """Build context prefix for log messages"""
        parts = []

        cycle_ctx = self.get_cycle_context()
        if cycle_ctx:
            parts.append(f"CYCLE:{cycle_ctx.cycle_id[:8]}")
            parts.append(f"TABLE:{cycle_ctx.table_name}")
            if cycle_ctx.total_partitions > 0:
                parts.append(f"PARTITIONS:{cycle_ctx.emitted_partitions}/{cycle_ctx.total_partitions}")
            if cycle_ctx.total_rows > 0:
                parts.append(f"ROWS:{self._format_rows(cycle_ctx.total_rows)}")

        with self._lock:
            conn_stats = self._connection_stats
            parts.append(f"CONN:{conn_stats['active_connections']}/{conn_stats['max_connections']}")
            if conn_stats['circuit_breaker_state'] != 'CLOSED':
                parts.append(f"CIRCUIT:{conn_stats['circuit_breaker_state']}")

        parts.append(f"MEM:{self._get_memory_usage()}")

        return "[" + "] [".join(parts) + "]" if parts else ""

    def info(self, message: str, **kwargs):
        """Log info message with context"""
        prefix = self._build_context_prefix()
        full_message = f"{prefix} {message}" if prefix else message
        self.logger.info(full_message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with context"""
        prefix = self._build_context_prefix()
        full_message = f"{prefix} {message}" if prefix else message
        self.logger.warning(full_message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with context"""
        prefix = self._build_context_prefix()
        full_message = f"{prefix} {message}" if prefix else message
        self.logger.error(full_message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with context"""
        prefix = self._build_context_prefix()
        full_message = f"{prefix} {message}" if prefix else message
        self.logger.debug(full_message, **kwargs)

    # Cycle-level logging methods
    def cycle_started(self, cycle_id: str, table_name: str, state_key: Optional[str] = None):
        """Log cycle start"""
        self.set_cycle_context(cycle_id, table_name, state_key)
        if state_key:
            self.info(f"Started incremental fetch cycle (cursor key: {state_key})")
        else:
            self.info("Started full fetch cycle")

    def partitions_planned(self, total_partitions: int, total_rows: int, low: int, high: int):
        """Log partition planning results"""
        cycle_ctx = self.get_cycle_context()
        if cycle_ctx:
            cycle_ctx.total_partitions = total_partitions
            cycle_ctx.total_rows = total_rows

        self.info(f"Planned {total_partitions} partitions over [{low}, {high}] "
                  f"for {self._format_rows(total_rows)} rows")

    def partition_emitted(self, index: int):
        """Track an emitted partition"""
        cycle_ctx = self.get_cycle_context()
        if cycle_ctx:
            cycle_ctx.emitted_partitions = index + 1
        self.debug(f"Emitted fragment {index}")

    def cycle_skipped(self, current_value: Optional[str]):
        """Log a cycle that found no new rows"""
        self.info(f"Cursor unchanged at {current_value!r}, nothing to fetch")

    def cycle_completed(self, emitted: int, new_value: Optional[str] = None):
        """Log cycle completion"""
        cycle_ctx = self.get_cycle_context()
        duration = time.time() - cycle_ctx.start_time if cycle_ctx else 0.0
        cursor_info = f", cursor advanced to {new_value!r}" if new_value is not None else ""
        self.info(f"Fetch cycle completed in {self._format_duration(duration)}: "
                  f"{emitted} queries emitted{cursor_info}")

    def cycle_failed(self, error: str):
        """Log cycle failure"""
        self.error(f"Fetch cycle failed, yielding until next trigger: {error}")

    def state_write_hazard(self, state_key: str, new_value: Optional[str], error: str):
        """Log a cursor that could not be persisted after emission"""
        self.error(f"Failed to persist cursor {state_key}={new_value!r}, observed maximum value "
                   f"will not be recorded and the next cycle may emit duplicate queries: {error}")

    # Connection management logging
    def connection_acquired(self, connection_id: str, pool_size: int):
        """Log connection acquisition"""
        with self._lock:
            self._connection_stats['active_connections'] += 1

        self.debug(f"Connection acquired: {connection_id} (pool: {pool_size})")

    def connection_released(self, connection_id: str, duration: float):
        """Log connection release"""
        with self._lock:
            self._connection_stats['active_connections'] = max(0,
                self._connection_stats['active_connections'] - 1)

        self.debug(f"Connection released: {connection_id} (held: {self._format_duration(duration)})")

    def connection_error(self, error: str):
        """Log connection error"""
        self.error(f"Connection error: {error}")

    def circuit_breaker_opened(self, failure_count: int, backoff_seconds: float):
        """Log circuit breaker opening"""
        self.warning(f"Circuit breaker opened after {failure_count} failures - "
                    f"backing off for {backoff_seconds}s")

    def circuit_breaker_closed(self, success_count: int):
        """Log circuit breaker closing"""
        self.info(f"Circuit breaker closed after {success_count} successful connections")

    def set_max_connections(self, max_connections: int):
        with self._lock:
            self._connection_stats['max_connections'] = max_connections


# Global logger instance
logger = EnhancedLogger("TableFetch")
