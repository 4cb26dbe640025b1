"""
In-process staging sink for ``--dry-run`` and tests.
"""

import threading
from collections.abc import Iterable

from change_staging.models import StagedChange

from .base import StagingSink, distinct_by_fingerprint


class InMemoryStagingSink(StagingSink):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: list[StagedChange] = []
        self.reset_count = 0

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()
            self.reset_count += 1

    def write(self, rows: Iterable[StagedChange]) -> int:
        distinct = distinct_by_fingerprint(rows)
        with self._lock:
            self._rows.extend(distinct)
        return len(distinct)

    @property
    def rows(self) -> list[StagedChange]:
        with self._lock:
            return list(self._rows)

    def rows_for(self, qualified_name: str) -> list[StagedChange]:
        return [
            row for row in self.rows
            if f"{row.schema_name}.{row.table_name}" == qualified_name
        ]
