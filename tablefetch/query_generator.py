#!/usr/bin/env python3
"""
Query generation for planned partitions
Renders one extraction query per partition together with its routing attributes
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tablefetch.partition_planner import Partition
from tablefetch.range_probe import join_predicates, split_expression

TOTAL_ROW_COUNT_ATTRIBUTE = "tablefetch.total.row.count"


@dataclass(frozen=True)
class GeneratedQuery:
    """One extraction query (fragment) of a fetch cycle"""
    sql: str
    fragment_index: int
    fragment_count: int
    fragment_id: str
    total_row_count: int
    attributes: Dict[str, str] = field(default_factory=dict)


def sanitize_attribute(attribute: Optional[str]) -> Optional[str]:
    """Lower-case a routing hint and replace underscores with hyphens"""
    if attribute is None:
        return None
    return attribute.lower().replace("_", "-")


def new_fragment_id() -> str:
    return str(uuid.uuid4())


class QueryGenerator:
    """
    Builds SELECT statements bounded by partition ranges
    """

    def __init__(self, schema: str, table_name: str, split_column: str, columns: str = "*",
                 condition: Optional[str] = None, to_number: bool = False,
                 tenant: Optional[str] = None, source: Optional[str] = None,
                 max_workers: int = 1):
        self.schema = schema
        self.table_name = table_name
        self.split_column = split_column
        self.columns = columns
        self.condition = condition
        self.to_number = to_number
        self.tenant = tenant
        self.source = source
        self.max_workers = max_workers

    @classmethod
    def from_config(cls, config) -> 'QueryGenerator':
        return cls(
            schema=config.schema,
            table_name=config.table_name,
            split_column=config.split_column,
            columns=config.columns,
            condition=config.condition,
            to_number=config.to_number,
            tenant=config.tenant,
            source=config.source,
            max_workers=config.max_workers
        )

    def build_query(self, partition: Partition, max_value_predicate: Optional[str] = None) -> str:
        """SELECT <columns> FROM schema.table WHERE <range> [AND <hwm>] [AND <condition>]"""
        column = split_expression(self.split_column, self.to_number)
        range_predicate = f"{column} BETWEEN {partition.min_bound} AND {partition.max_bound}"
        where_clause = join_predicates([range_predicate, max_value_predicate, self.condition])
        return f"SELECT {self.columns} FROM {self.schema}.{self.table_name} WHERE {where_clause}"

    def build_attributes(self, sql: str, index: int, count: int, fragment_id: str,
                         total_row_count: int) -> Dict[str, str]:
        attributes = {
            "table.name": sanitize_attribute(self.table_name),
            TOTAL_ROW_COUNT_ATTRIBUTE: str(total_row_count),
            "fragment.identifier": fragment_id,
            "fragment.index": str(index),
            "fragment.count": str(count),
            "fragment.sql": sql,
            "segment.original.filename": fragment_id,
        }
        if self.tenant is not None:
            attributes["tenant.name"] = sanitize_attribute(self.tenant)
        if self.source is not None:
            attributes["source.name"] = sanitize_attribute(self.source)
        if self.schema is not None:
            attributes["schema.name"] = sanitize_attribute(self.schema)
        return attributes

    def _generate_one(self, partition: Partition, count: int, fragment_id: str,
                      total_row_count: int, max_value_predicate: Optional[str]) -> GeneratedQuery:
        sql = self.build_query(partition, max_value_predicate)
        return GeneratedQuery(
            sql=sql,
            fragment_index=partition.index,
            fragment_count=count,
            fragment_id=fragment_id,
            total_row_count=total_row_count,
            attributes=self.build_attributes(sql, partition.index, count, fragment_id, total_row_count)
        )

    def generate(self, partitions: List[Partition], total_row_count: int,
                 max_value_predicate: Optional[str] = None,
                 fragment_id: Optional[str] = None) -> List[GeneratedQuery]:
        """
        Generate one query per partition

        Args:
            partitions: Planned partitions in index order
            total_row_count: Row count reported by the range probe
            max_value_predicate: High-water-mark predicate, if incremental
            fragment_id: Shared id of this cycle's fragments; generated when omitted

        Returns:
            Queries in partition index order, whatever the number of workers
        """
        fragment_id = fragment_id or new_fragment_id()
        count = len(partitions)

        if self.max_workers <= 1 or count <= 1:
            return [self._generate_one(p, count, fragment_id, total_row_count, max_value_predicate)
                    for p in partitions]

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix=f"QueryGen-{self.table_name}") as executor:
            # map() yields results in submission order
            return list(executor.map(
                lambda p: self._generate_one(p, count, fragment_id, total_row_count, max_value_predicate),
                partitions
            ))
