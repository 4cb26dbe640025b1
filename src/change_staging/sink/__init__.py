"""
Staging sink: the shared table downstream ETL reads changed keys from.
"""

from .base import StagingSink, distinct_by_fingerprint
from .memory import InMemoryStagingSink
from .sqlserver import SQLServerStagingSink

__all__ = [
    "StagingSink",
    "InMemoryStagingSink",
    "SQLServerStagingSink",
    "distinct_by_fingerprint",
]
