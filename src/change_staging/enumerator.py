"""
Change enumerator.

Turns a table's change feed between two versions into key fingerprints.
The fingerprint of a key is a SHA-256 over its column values concatenated
in key ordinal order, so it is fixed-width regardless of key shape and
sensitive to which column holds which value.
"""

import hashlib
import logging
from collections.abc import Iterator, Sequence
from typing import Any

from utils.retry import is_retryable_db_exception

from .errors import EnumeratorTransient, VersionExpired
from .models import ChangeRow, KeyFingerprint, TrackedTable
from .provider import ChangeTrackingProvider

logger = logging.getLogger(__name__)

# ASCII unit separator between key values
VALUE_SEPARATOR = "\x1f"
NULL_TOKEN = "NULL"
ESCAPE = "\\"


def _render(value: Any) -> str:
    text = NULL_TOKEN if value is None else str(value)
    # Backslash first, otherwise escaped separators would be doubled
    return text.replace(ESCAPE, ESCAPE * 2).replace(VALUE_SEPARATOR, ESCAPE + "x1f")


def fingerprint_key(key_values: Sequence[Any]) -> str:
    """
    Deterministic 64-character hex fingerprint of a (possibly composite) key.

    Values are rendered with ``str()`` and joined by ``VALUE_SEPARATOR``.
    Backslashes and separators inside a value are backslash-escaped, so a
    separator inside a value never moves the boundary between values.

    Example:
        >>> fingerprint_key((1,)) == fingerprint_key(("1",))
        True
        >>> fingerprint_key((1, 2)) == fingerprint_key((2, 1))
        False
        >>> fingerprint_key(("a\\x1fb", "c")) == fingerprint_key(("a", "b\\x1fc"))
        False
    """
    rendered = VALUE_SEPARATOR.join(_render(value) for value in key_values)
    return hashlib.sha256(rendered.encode("utf-8")).hexdigest()


class ChangeEnumerator:
    """Enumerates changed-key fingerprints for one table at a time."""

    def __init__(self, provider: ChangeTrackingProvider):
        self.provider = provider

    def enumerate_changes(
        self,
        table: TrackedTable,
        since_version: int,
        upto_version: int,
    ) -> Iterator[KeyFingerprint]:
        """
        Fingerprints of keys changed in the window (since_version, upto_version].

        The retention check runs immediately; rows are read lazily as the
        result is iterated. A key changed several times in the window may
        appear more than once.

        Raises:
            VersionExpired: If ``since_version`` is older than the engine's
                current minimum valid version for the table
            EnumeratorTransient: On a transient provider failure, either here
                or while iterating
        """
        try:
            min_valid = self.provider.min_valid_version(table)
        except Exception as e:
            if is_retryable_db_exception(e):
                raise self._transient(table, e) from e
            raise

        if min_valid is not None and since_version < min_valid:
            raise VersionExpired(table.qualified_name, since_version, min_valid)

        logger.debug(
            f"Enumerating changes of {table.qualified_name} in "
            f"({since_version}, {upto_version}]"
        )

        if since_version >= upto_version:
            return iter(())

        return self._iterate(table, since_version, upto_version)

    def _iterate(
        self, table: TrackedTable, since_version: int, upto_version: int
    ) -> Iterator[KeyFingerprint]:
        key_count = len(table.key_columns)
        try:
            rows = iter(self.provider.changes_since(table, since_version, upto_version))
        except Exception as e:
            if is_retryable_db_exception(e):
                raise self._transient(table, e) from e
            raise

        while True:
            try:
                row: ChangeRow = next(rows)
            except StopIteration:
                return
            except Exception as e:
                if is_retryable_db_exception(e):
                    raise self._transient(table, e) from e
                raise

            # Providers may ignore the upper bound; later changes belong to the next run
            if not since_version < row.change_version <= upto_version:
                continue

            if len(row.key_values) != key_count:
                raise ValueError(
                    f"{table.qualified_name} change row has {len(row.key_values)} "
                    f"key value(s), expected {key_count}"
                )

            yield KeyFingerprint(
                fingerprint=fingerprint_key(row.key_values),
                change_version=row.change_version,
            )

    @staticmethod
    def _transient(table: TrackedTable, error: Exception) -> EnumeratorTransient:
        return EnumeratorTransient(
            f"Transient change feed failure for {table.qualified_name}: {error}",
            table=table.qualified_name,
        )
