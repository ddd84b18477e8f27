#!/usr/bin/env python3
"""
Error types raised while planning a table fetch cycle
"""

from typing import List, Optional


class TableFetchError(Exception):
    """Base class for all table fetch errors"""


class ConfigurationError(TableFetchError):
    """
    One or more options are missing or set inconsistently.

    Raised before any query is issued and never retried: an operator has to
    correct the configuration first.
    """

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class StateReadError(TableFetchError):
    """The cursor store could not be read; no source query was issued"""


class ProbeExecutionError(TableFetchError):
    """A metadata query failed or returned no row"""

    def __init__(self, message: str, sql: Optional[str] = None):
        self.sql = sql
        if sql:
            message = f"{message}: {sql}"
        super().__init__(message)


class StateWriteError(TableFetchError):
    """The cursor could not be persisted after the cycle's queries were emitted"""


class EmissionError(TableFetchError):
    """A work unit could not be handed to the sink"""
