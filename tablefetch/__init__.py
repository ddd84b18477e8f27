"""
Table fetch planner: splits large table scans into range-bounded extraction
queries and tracks a high-water-mark between runs.
"""

__version__ = "0.1.0"
