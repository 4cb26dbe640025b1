"""
Storage/catalog providers: the database's native change tracking facility.
"""

from .base import CatalogKeyColumnRow, ChangeTrackingProvider
from .sqlserver import SQLServerChangeTrackingProvider

__all__ = [
    "CatalogKeyColumnRow",
    "ChangeTrackingProvider",
    "SQLServerChangeTrackingProvider",
]
