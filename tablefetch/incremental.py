#!/usr/bin/env python3
"""
Incremental fetching
Tracks the high-water-mark of the max-value column between fetch cycles
"""

import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Optional

from tablefetch.config import MaxValueColumnType
from tablefetch.enhanced_logger import logger
from tablefetch.errors import ConfigurationError, ProbeExecutionError, StateReadError, StateWriteError
from tablefetch.range_probe import join_predicates

STATE_KEY_SEPARATOR = "@!@"


def get_state_key(table_name: str, max_value_column: str) -> str:
    """Cursor key for a table and max-value column, e.g. "orders@!@updated_at" """
    return f"{table_name.lower()}{STATE_KEY_SEPARATOR}{max_value_column.lower()}"


def max_value_where_clause(max_value_column: str, column_type, type_format: Optional[str],
                           value: str) -> str:
    """
    Build the high-water-mark predicate for the current cursor value

    Args:
        max_value_column: Column the cursor tracks
        column_type: MaxValueColumnType or its string tag
        type_format: Format pattern for date and timestamp columns
        value: Current cursor value

    Returns:
        SQL predicate selecting rows at or above the cursor
    """
    try:
        column_type = MaxValueColumnType(column_type.lower() if isinstance(column_type, str) else column_type)
    except ValueError:
        raise ConfigurationError([f"Unknown max-value column type: {column_type!r}"])

    if column_type in (MaxValueColumnType.NONE, MaxValueColumnType.INTEGER):
        return f"{max_value_column} >= {value}"

    if not type_format:
        raise ConfigurationError([f"A format is required for {column_type.value} max-value columns"])
    if column_type == MaxValueColumnType.DATE:
        return f"{max_value_column} >= TO_DATE('{value}', '{type_format}')"
    return f"{max_value_column} >= TO_TIMESTAMP('{value}', '{type_format}')"


_FORMAT_TOKEN = re.compile(r"YYYY|HH24|HH12|HH|MI|SS|FF[1-9]?|MM|DD|YY|AM|PM", re.IGNORECASE)


def _render_token(token: str, value) -> str:
    token = token.upper()
    hour = getattr(value, 'hour', 0)
    if token == 'YYYY':
        return f"{value.year:04d}"
    if token == 'YY':
        return f"{value.year % 100:02d}"
    if token == 'MM':
        return f"{value.month:02d}"
    if token == 'DD':
        return f"{value.day:02d}"
    if token == 'HH24':
        return f"{hour:02d}"
    if token in ('HH', 'HH12'):
        return f"{(hour % 12) or 12:02d}"
    if token == 'MI':
        return f"{getattr(value, 'minute', 0):02d}"
    if token == 'SS':
        return f"{getattr(value, 'second', 0):02d}"
    if token in ('AM', 'PM'):
        return 'AM' if hour < 12 else 'PM'
    # FF, FF1..FF9: fractional seconds
    digits = int(token[2:]) if len(token) > 2 else 6
    return f"{getattr(value, 'microsecond', 0):06d}"[:digits].ljust(digits, '0')


def format_max_value(value: Any, column_type, type_format: Optional[str]) -> Optional[str]:
    """
    Render a probed maximum as the literal the next cycle's predicate parses

    Date and time values returned by the driver are written with the
    configured format pattern (YYYY, MM, DD, HH24, MI, SS, FF...), so a
    time zone offset or microseconds the pattern does not ask for never end
    up in the stored cursor. Anything else is stored as its string form.
    """
    if value is None:
        return None
    if isinstance(value, (datetime, date)) and type_format:
        tag = column_type.value if isinstance(column_type, MaxValueColumnType) else str(column_type).lower()
        if tag in (MaxValueColumnType.DATE.value, MaxValueColumnType.TIMESTAMP.value):
            return _FORMAT_TOKEN.sub(lambda m: _render_token(m.group(0), value), type_format)
    return str(value)


def default_max_value_query(schema: str, table_name: str, max_value_column: str,
                            condition: Optional[str] = None) -> str:
    """Max-value query used when none is configured"""
    query = f"SELECT MAX({max_value_column}) FROM {schema}.{table_name}"
    where_clause = join_predicates([condition])
    if where_clause:
        query = f"{query} WHERE {where_clause}"
    return query


@dataclass(frozen=True)
class IncrementalState:
    """Cursor values of one fetch cycle"""
    current_value: Optional[str] = None
    new_value: Optional[str] = None

    def has_changed(self) -> bool:
        return self.new_value != self.current_value

    def exists(self) -> bool:
        """True when a previous cursor (or start value) is known"""
        return self.current_value is not None and self.current_value != ''

    def with_new_value(self, new_value: Optional[str]) -> 'IncrementalState':
        return replace(self, new_value=new_value)


class IncrementalCursor:
    """
    Loads, probes and commits the high-water-mark of one table

    The cursor never holds state between cycles itself: every cycle loads an
    IncrementalState from the store and hands it back for the commit.
    """

    def __init__(self, store, executor, config):
        self.store = store
        self.executor = executor
        self.config = config
        self.state_key = get_state_key(config.table_name, config.max_value_column)

    @property
    def max_value_query(self) -> str:
        if self.config.max_value_query:
            return self.config.max_value_query
        return default_max_value_query(self.config.schema, self.config.table_name,
                                       self.config.max_value_column, self.config.condition)

    def load(self) -> IncrementalState:
        """
        Read the recorded cursor, falling back to the configured start value

        Raises:
            StateReadError: the store could not be read
        """
        try:
            stored = self.store.get(self.state_key)
        except Exception as e:
            logger.error(f"Failed to retrieve observed maximum value for {self.state_key} from the "
                         f"cursor store. Will not perform query until this is accomplished: {e}")
            raise StateReadError(f"Unable to read cursor {self.state_key}: {e}") from e

        current = stored if stored is not None else self.config.max_value_start_value
        logger.debug(f"Loaded cursor {self.state_key}={current!r}")
        return IncrementalState(current_value=current)

    def probe(self, state: IncrementalState) -> IncrementalState:
        """
        Run the max-value query and record its result as the new value

        Raises:
            ProbeExecutionError: the query failed or returned no row
        """
        query = self.max_value_query
        try:
            rows = self.executor.execute(query)
        except Exception as e:
            logger.error(f"Unable to execute SQL select query {query} due to {e}")
            raise ProbeExecutionError(f"Max-value probe failed ({e})", sql=query) from e

        if not rows or not rows[0]:
            logger.error(f"Something is very wrong here, one row should have been returned: {query}")
            raise ProbeExecutionError("No rows returned from max-value query", sql=query)

        new_value = format_max_value(rows[0][0], self.config.max_value_column_type,
                                     self.config.max_value_type_format)
        return state.with_new_value(new_value)

    def predicate(self, state: IncrementalState) -> Optional[str]:
        """High-water-mark predicate for this cycle, None before the first cursor exists"""
        if not state.exists():
            return None
        return max_value_where_clause(self.config.max_value_column,
                                      self.config.max_value_column_type,
                                      self.config.max_value_type_format,
                                      state.current_value)

    def commit(self, state: IncrementalState):
        """
        Persist the new cursor value after every query of the cycle was emitted

        Raises:
            StateWriteError: the store rejected or failed the write
        """
        if state.new_value is None:
            logger.debug(f"No new value for {self.state_key}, cursor left untouched")
            return

        try:
            written = self.store.set(self.state_key, state.new_value)
        except Exception as e:
            raise StateWriteError(f"Unable to write cursor {self.state_key}: {e}") from e
        if written is False:
            raise StateWriteError(f"Cursor store refused to write {self.state_key}")
