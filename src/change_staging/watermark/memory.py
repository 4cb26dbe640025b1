"""
In-process watermark store.

Backs ``--dry-run`` (seeded from the real store, never written back) and
the unit tests.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime

from change_staging.errors import WatermarkRegressed
from change_staging.models import TrackedTable, Watermark

from .base import WatermarkStore, default_min_version, table_name_of

logger = logging.getLogger(__name__)


class InMemoryWatermarkStore(WatermarkStore):
    """Thread-safe dict-backed watermark store."""

    def __init__(
        self,
        actor: str = "ct-staging",
        initial: Iterable[Watermark] = (),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.actor = actor
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, Watermark] = {w.table_name: w for w in initial}

    def seed_missing(
        self,
        tables: Iterable[TrackedTable],
        min_version_of: Callable[[TrackedTable], int] = default_min_version,
    ) -> list[str]:
        seeded = []
        with self._lock:
            for table in tables:
                name = table.qualified_name
                if name in self._entries:
                    continue
                self._entries[name] = Watermark(
                    table_name=name,
                    version=min_version_of(table),
                    key_columns=table.key_signature,
                    created_at=self._clock(),
                    created_by=self.actor,
                )
                seeded.append(name)

        if seeded:
            logger.info(f"Seeded {len(seeded)} watermark(s): {', '.join(seeded)}")
        return seeded

    def read_entry(self, table: TrackedTable | str) -> Watermark | None:
        with self._lock:
            return self._entries.get(table_name_of(table))

    def advance(
        self,
        table: TrackedTable | str,
        new_version: int,
        key_columns: str | None = None,
    ) -> Watermark:
        name = table_name_of(table)
        with self._lock:
            current = self._entries.get(name)
            if current is None:
                raise KeyError(f"No watermark for {name}")
            if new_version < current.version:
                raise WatermarkRegressed(name, current.version, new_version)

            updated = replace(
                current,
                version=new_version,
                key_columns=current.key_columns or key_columns,
                updated_at=self._clock(),
                updated_by=self.actor,
            )
            self._entries[name] = updated
            return updated

    def reseed(self, table: TrackedTable, version: int) -> Watermark:
        name = table.qualified_name
        now = self._clock()
        with self._lock:
            current = self._entries.get(name)
            if current is None:
                updated = Watermark(
                    table_name=name,
                    version=version,
                    key_columns=table.key_signature,
                    created_at=now,
                    created_by=self.actor,
                )
            else:
                updated = replace(
                    current,
                    version=max(current.version, version),
                    key_columns=table.key_signature,
                    updated_at=now,
                    updated_by=self.actor,
                )
            self._entries[name] = updated
            return updated

    def list_all(self) -> list[Watermark]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda w: w.table_name)
