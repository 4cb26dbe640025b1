"""
Staging sink contract.
"""

from collections.abc import Iterable

from change_staging.models import StagedChange


def distinct_by_fingerprint(rows: Iterable[StagedChange]) -> list[StagedChange]:
    """Drop repeated fingerprints, keeping the first occurrence and input order."""
    seen: dict[str, StagedChange] = {}
    for row in rows:
        seen.setdefault(row.key_fingerprint, row)
    return list(seen.values())


class StagingSink:
    """
    Base class for staging sinks.

    ``reset`` clears the whole staging set once per run; ``write`` appends
    one table's rows, deduplicated by fingerprint, atomically: either every
    row of the call is visible afterwards or none is.
    """

    def reset(self) -> None:
        raise NotImplementedError

    def write(self, rows: Iterable[StagedChange]) -> int:
        """Append rows; returns the number of rows written after deduplication."""
        raise NotImplementedError
