#!/usr/bin/env python3
"""
Range probe for the split column
Issues a single MIN/MAX/COUNT metadata query and returns the column range
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from tablefetch.enhanced_logger import logger
from tablefetch.errors import ProbeExecutionError

MIN_SPLIT_COLUMN_NAME = "min_split"
MAX_SPLIT_COLUMN_NAME = "max_split"
COUNT_SPLIT_COLUMN_NAME = "count_split"


@dataclass(frozen=True)
class ColumnRange:
    """Range of the split column over the (filtered) table"""
    low: int
    high: int
    row_count: int

    @property
    def is_empty(self) -> bool:
        return self.row_count == 0


def split_expression(split_column: str, to_number: bool = False) -> str:
    """The split column as it appears in probe and partition predicates"""
    if to_number:
        return f"TO_NUMBER({split_column})"
    return split_column


def join_predicates(predicates: List[Optional[str]]) -> str:
    """AND together the predicates that are actually present"""
    return " AND ".join(p for p in predicates if p)


def _as_int(value: Any, label: str) -> int:
    # Aggregates over an empty table come back as NULL
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{label} is not numeric: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    return int(Decimal(str(value).strip()))


class RangeProbe:
    """
    Finds MIN, MAX and COUNT of the split column for a table
    """

    def __init__(self, executor, schema: str, table_name: str, split_column: str,
                 to_number: bool = False):
        self.executor = executor
        self.schema = schema
        self.table_name = table_name
        self.split_column = split_column
        self.to_number = to_number

    def build_query(self, max_value_predicate: Optional[str] = None,
                    condition: Optional[str] = None) -> str:
        """
        Build the metadata query

        Args:
            max_value_predicate: High-water-mark predicate, if incremental
            condition: Extra filter condition

        Returns:
            SELECT MIN(..), MAX(..), COUNT(*) FROM schema.table [WHERE ..]
        """
        column = split_expression(self.split_column, self.to_number)
        query = (f"SELECT MIN({column}) AS {MIN_SPLIT_COLUMN_NAME}, "
                 f"MAX({column}) AS {MAX_SPLIT_COLUMN_NAME}, "
                 f"COUNT(*) AS {COUNT_SPLIT_COLUMN_NAME} "
                 f"FROM {self.schema}.{self.table_name}")

        where_clause = join_predicates([max_value_predicate, condition])
        if where_clause:
            query = f"{query} WHERE {where_clause}"
        return query

    def probe(self, max_value_predicate: Optional[str] = None,
              condition: Optional[str] = None) -> ColumnRange:
        """
        Execute the metadata query

        Returns:
            ColumnRange for the split column

        Raises:
            ProbeExecutionError: the query failed or did not return exactly one row
        """
        query = self.build_query(max_value_predicate, condition)

        try:
            rows = self.executor.execute(query)
        except Exception as e:
            logger.error(f"Unable to execute SQL select query {query} due to {e}")
            raise ProbeExecutionError(f"Range probe failed ({e})", sql=query) from e

        if not rows:
            logger.error(f"Something is very wrong here, one row (even if count is zero) "
                         f"should have been returned: {query}")
            raise ProbeExecutionError("No rows returned from metadata query", sql=query)

        if len(rows[0]) < 3:
            raise ProbeExecutionError(f"Metadata query returned {len(rows[0])} columns, expected "
                                      f"{MIN_SPLIT_COLUMN_NAME}, {MAX_SPLIT_COLUMN_NAME} and "
                                      f"{COUNT_SPLIT_COLUMN_NAME}", sql=query)

        low, high, row_count = rows[0][0], rows[0][1], rows[0][2]
        try:
            column_range = ColumnRange(
                low=_as_int(low, MIN_SPLIT_COLUMN_NAME),
                high=_as_int(high, MAX_SPLIT_COLUMN_NAME),
                row_count=_as_int(row_count, COUNT_SPLIT_COLUMN_NAME)
            )
        except (ValueError, ArithmeticError) as e:
            raise ProbeExecutionError(f"Metadata query returned a non-numeric range ({e})", sql=query) from e

        if column_range.low > column_range.high:
            raise ProbeExecutionError(f"Metadata query returned MIN {column_range.low} greater than "
                                      f"MAX {column_range.high}", sql=query)

        logger.info(f"Range of {self.split_column}: {column_range.low} to {column_range.high} "
                    f"({column_range.row_count:,} rows)")
        return column_range
