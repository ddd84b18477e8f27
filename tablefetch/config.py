#!/usr/bin/env python3
"""
Configuration for table fetch planning
Declarative option table plus a typed, eagerly validated FetchConfig
"""

import os
import re
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from tablefetch.errors import ConfigurationError


class MaxValueColumnType(Enum):
    """How the high-water-mark literal is compared against the max-value column"""
    NONE = "none"
    INTEGER = "integer"
    DATE = "date"
    TIMESTAMP = "timestamp"


class BudgetMode(Enum):
    """How the overall split budget is expressed"""
    PARTITION_COUNT = "partition_count"        # absolute number of partitions
    ROWS_PER_PARTITION = "rows_per_partition"  # target rows per partition


@dataclass(frozen=True)
class ConfigOption:
    """One recognised configuration option"""
    name: str
    description: str
    default: Any = None
    required: bool = False
    allowed_values: Tuple[str, ...] = ()


OPTIONS: Tuple[ConfigOption, ...] = (
    ConfigOption('table_name', 'The name of the database table to be queried.', required=True),
    ConfigOption('schema', 'Schema the table lives in.', required=True),
    ConfigOption('columns', 'Comma-separated list of columns to return; quoting is the caller\'s job.', default='*'),
    ConfigOption('split_column', 'Numeric column used to bound the generated partitions.', required=True),
    ConfigOption('partition_count', 'Number of partitions to generate.', default=4),
    ConfigOption('rows_per_partition', 'Target number of rows per partition; overrides partition_count.'),
    ConfigOption('query_timeout', 'Maximum time for a metadata query, e.g. "30 seconds"; 0 means no limit.',
                 default='0 seconds'),
    ConfigOption('max_value_column', 'Column whose maximum value is tracked between cycles.'),
    ConfigOption('max_value_query', 'Query returning the new maximum value as its first column.'),
    ConfigOption('max_value_column_type', 'Type of the max-value column, used to build its predicate.',
                 default=MaxValueColumnType.NONE.value,
                 allowed_values=tuple(t.value for t in MaxValueColumnType)),
    ConfigOption('max_value_type_format', 'Format pattern for date and timestamp max-value columns.'),
    ConfigOption('max_value_start_value', 'Initial value of the max-value column when no cursor is stored.'),
    ConfigOption('condition', 'Additional condition added to every query.'),
    ConfigOption('to_number', 'Wrap the split column in TO_NUMBER().', default=False),
    ConfigOption('tenant', 'Hint for which tenant this data is ingested.'),
    ConfigOption('source', 'Hint for which source this data is ingested.'),
    ConfigOption('state_file', 'Path of the local cursor state file.'),
    ConfigOption('state_url', 'URL of the shared Redis cursor store.'),
    ConfigOption('max_workers', 'Threads used to generate partition queries.', default=1),
    ConfigOption('lock_timeout', 'Seconds to wait for a concurrent cycle on the same cursor.', default=30.0),
)

OPTION_NAMES = tuple(option.name for option in OPTIONS)

_TIME_UNITS = {
    'ms': 0.001, 'millis': 0.001, 'milliseconds': 0.001,
    's': 1, 'sec': 1, 'secs': 1, 'second': 1, 'seconds': 1,
    'm': 60, 'min': 60, 'mins': 60, 'minute': 60, 'minutes': 60,
    'h': 3600, 'hr': 3600, 'hour': 3600, 'hours': 3600,
}


def parse_time_period(value: Any) -> int:
    """
    Parse a time period such as "30 seconds" or "5 min" into whole seconds

    Bare numbers are taken as seconds. Anything below one second is zero.
    """
    if value is None or value == '':
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        match = re.fullmatch(r'\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*', str(value))
        if not match:
            raise ValueError(f"Invalid time period: {value!r}")
        amount, unit = match.groups()
        unit = unit.lower() or 's'
        if unit not in _TIME_UNITS:
            raise ValueError(f"Invalid time unit in {value!r}")
        seconds = float(amount) * _TIME_UNITS[unit]
    if seconds < 0:
        raise ValueError(f"Time period must not be negative: {value!r}")
    return int(seconds)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _blank(value: Optional[str]) -> bool:
    return value is None or str(value).strip() == ''


@dataclass
class FetchConfig:
    """Typed configuration of one table fetch"""
    table_name: str = ''
    schema: str = ''
    split_column: str = ''
    columns: str = '*'
    partition_count: Optional[int] = 4
    rows_per_partition: Optional[int] = None
    query_timeout: int = 0
    max_value_column: Optional[str] = None
    max_value_query: Optional[str] = None
    max_value_column_type: str = MaxValueColumnType.NONE.value
    max_value_type_format: Optional[str] = None
    max_value_start_value: Optional[str] = None
    condition: Optional[str] = None
    to_number: bool = False
    tenant: Optional[str] = None
    source: Optional[str] = None
    state_file: Optional[str] = None
    state_url: Optional[str] = None
    max_workers: int = 1
    lock_timeout: float = 30.0

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'FetchConfig':
        """
        Build a config from a plain mapping of option names to values

        Unknown option names are rejected. Values are coerced to the option's
        type; coercion problems are reported together as a ConfigurationError.
        """
        problems = []
        unknown = sorted(set(values) - set(OPTION_NAMES))
        if unknown:
            problems.append(f"Unknown options: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        for name, raw in values.items():
            if name not in OPTION_NAMES or raw is None:
                continue
            try:
                kwargs[name] = _coerce(name, raw)
            except (TypeError, ValueError) as e:
                problems.append(f"Option '{name}' has an invalid value {raw!r}: {e}")

        if problems:
            raise ConfigurationError(problems)

        # rows_per_partition takes over the budget unless a count was given too
        if kwargs.get('rows_per_partition') is not None and 'partition_count' not in kwargs:
            kwargs['partition_count'] = None

        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = 'TABLEFETCH_', environ: Optional[Dict[str, str]] = None) -> 'FetchConfig':
        """Build a config from environment variables such as TABLEFETCH_TABLE_NAME"""
        environ = os.environ if environ is None else environ
        values = {}
        for name in OPTION_NAMES:
            raw = environ.get(f"{prefix}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def budget_mode(self) -> BudgetMode:
        if self.rows_per_partition is not None:
            return BudgetMode.ROWS_PER_PARTITION
        return BudgetMode.PARTITION_COUNT

    @property
    def is_incremental(self) -> bool:
        return not _blank(self.max_value_column)

    @property
    def column_type(self) -> MaxValueColumnType:
        return MaxValueColumnType(self.max_value_column_type.lower())

    def validate(self) -> 'FetchConfig':
        """
        Check the config for missing and inconsistent options

        Every problem found is reported at once in a single ConfigurationError.

        Returns:
            self, so calls can be chained
        """
        problems = validate_config(self)
        if problems:
            raise ConfigurationError(problems)
        return self


def validate_config(config: FetchConfig) -> List[str]:
    """Return a list of human-readable problems with the given config"""
    problems = []

    for option in OPTIONS:
        if option.required and _blank(getattr(config, option.name)):
            problems.append(f"Option '{option.name}' is required")

    if _blank(config.columns):
        problems.append("Option 'columns' must not be empty")

    if config.partition_count is None and config.rows_per_partition is None:
        problems.append("One of 'partition_count' or 'rows_per_partition' must be set")
    if config.partition_count is not None and config.rows_per_partition is not None:
        problems.append("Only one of 'partition_count' or 'rows_per_partition' may be set")
    if config.partition_count is not None and config.partition_count < 1:
        problems.append("Option 'partition_count' must be at least 1")
    if config.rows_per_partition is not None and config.rows_per_partition < 1:
        problems.append("Option 'rows_per_partition' must be at least 1")

    if config.query_timeout < 0:
        problems.append("Option 'query_timeout' must not be negative")
    if config.max_workers is None or config.max_workers < 1:
        problems.append("Option 'max_workers' must be at least 1")
    if config.lock_timeout < 0:
        problems.append("Option 'lock_timeout' must not be negative")

    allowed_types = tuple(t.value for t in MaxValueColumnType)
    type_tag = (config.max_value_column_type or '').lower()
    if type_tag not in allowed_types:
        problems.append(f"Option 'max_value_column_type' must be one of {', '.join(allowed_types)}, "
                        f"got {config.max_value_column_type!r}")
    elif type_tag in (MaxValueColumnType.DATE.value, MaxValueColumnType.TIMESTAMP.value):
        if config.is_incremental and _blank(config.max_value_type_format):
            problems.append(f"Option 'max_value_type_format' is required for {type_tag} max-value columns")

    has_store = not _blank(config.state_file) or not _blank(config.state_url)
    if config.is_incremental and not has_store:
        problems.append("Option 'max_value_column' can not be set without a cursor store "
                        "('state_file' or 'state_url')")
    if has_store and not config.is_incremental:
        problems.append("A cursor store ('state_file' or 'state_url') can not be set without 'max_value_column'")
    if not _blank(config.state_file) and not _blank(config.state_url):
        problems.append("Only one of 'state_file' or 'state_url' may be set")
    if not _blank(config.max_value_query) and not config.is_incremental:
        problems.append("Option 'max_value_query' can not be set without 'max_value_column'")

    return problems


def _coerce(name: str, raw: Any) -> Any:
    if name in ('partition_count', 'rows_per_partition', 'max_workers'):
        if raw == '':
            return None
        if isinstance(raw, bool):
            raise TypeError("expected an integer")
        return int(raw)
    if name == 'query_timeout':
        return parse_time_period(raw)
    if name == 'lock_timeout':
        return float(raw)
    if name == 'to_number':
        return _parse_bool(raw)
    if name == 'max_value_column_type':
        return str(raw).lower()
    return str(raw)
