#!/usr/bin/env python3
"""
Range-Based Partition Planning
Splits a split-column range into contiguous BETWEEN ranges, one per extraction query
"""

from dataclasses import dataclass
from typing import List

from tablefetch.config import BudgetMode
from tablefetch.enhanced_logger import logger
from tablefetch.errors import ConfigurationError
from tablefetch.range_probe import ColumnRange


@dataclass(frozen=True)
class Partition:
    """One closed interval [min_bound, max_bound] of the split column"""
    index: int
    min_bound: int
    max_bound: int


def chunk_count_for_target(row_count: int, target_chunks: int) -> int:
    """Number of partitions when the budget is an absolute partition count"""
    if target_chunks < 1:
        raise ConfigurationError([f"Partition count must be at least 1, got {target_chunks}"])
    return min(target_chunks, max(row_count, 1))


def chunk_count_for_rows(row_count: int, rows_per_chunk: int) -> int:
    """Number of partitions when the budget is a number of rows per partition"""
    if rows_per_chunk < 1:
        raise ConfigurationError([f"Rows per partition must be at least 1, got {rows_per_chunk}"])
    # Ceiling division; an empty table still gets one partition
    return max((row_count + rows_per_chunk - 1) // rows_per_chunk, 1)


def split_range(low: int, high: int, chunks: int) -> List[Partition]:
    """
    Split the closed interval [low, high] into contiguous partitions

    The last partition absorbs the remainder of the integer division, and
    every upper bound is clamped to `high`. A range holding fewer distinct
    values than `chunks` is split into one partition per value instead, so
    no two partitions ever select the same rows. The number of partitions
    returned (and so the `fragment.count` of the cycle) can therefore be
    below the requested `chunks`.
    """
    if high < low:
        raise ValueError(f"Invalid range: low {low} is greater than high {high}")

    span = high - low + 1
    requested = max(chunks, 1)
    chunks = min(requested, span)
    if chunks < requested:
        logger.warning(f"Reduced partition count from {requested} to {chunks}: "
                       f"range [{low}, {high}] only holds {span} distinct values")
    chunk_size = span // chunks

    partitions = []
    for i in range(chunks):
        min_bound = low + i * chunk_size
        if i == chunks - 1:
            max_bound = high
        else:
            max_bound = min((i + 1) * chunk_size - 1 + low, high)
        partitions.append(Partition(index=i, min_bound=min_bound, max_bound=max_bound))
    return partitions


def plan(column_range: ColumnRange, target_chunks: int) -> List[Partition]:
    """
    Plan at most `target_chunks` partitions

    Never more partitions than rows, nor than distinct values in [low, high].
    """
    chunks = chunk_count_for_target(column_range.row_count, target_chunks)
    return split_range(column_range.low, column_range.high, chunks)


def plan_by_rows(column_range: ColumnRange, rows_per_chunk: int) -> List[Partition]:
    """Plan ceil(row_count / rows_per_chunk) partitions"""
    chunks = chunk_count_for_rows(column_range.row_count, rows_per_chunk)
    return split_range(column_range.low, column_range.high, chunks)


class PartitionPlanner:
    """
    Plans partitions for a fixed budget
    """

    def __init__(self, budget: int, mode: BudgetMode = BudgetMode.PARTITION_COUNT):
        self.budget = budget
        self.mode = mode

    @classmethod
    def from_config(cls, config) -> 'PartitionPlanner':
        if config.budget_mode == BudgetMode.ROWS_PER_PARTITION:
            return cls(config.rows_per_partition, BudgetMode.ROWS_PER_PARTITION)
        return cls(config.partition_count, BudgetMode.PARTITION_COUNT)

    def plan(self, column_range: ColumnRange) -> List[Partition]:
        """
        Calculate partition boundaries for the range

        Args:
            column_range: Result of the range probe

        Returns:
            Partitions in index order covering [low, high]
        """
        if self.mode == BudgetMode.ROWS_PER_PARTITION:
            return plan_by_rows(column_range, self.budget)
        return plan(column_range, self.budget)
