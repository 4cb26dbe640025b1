"""
Watermark store: durable last-processed change tracking version per table.
"""

from .base import WatermarkStore, table_name_of
from .memory import InMemoryWatermarkStore
from .sqlserver import SQLServerWatermarkStore

__all__ = [
    "WatermarkStore",
    "InMemoryWatermarkStore",
    "SQLServerWatermarkStore",
    "table_name_of",
]
