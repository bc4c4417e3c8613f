"""
Interning tables: append-only value ↔ index maps.

Every categorical field of a section or meeting is stored as an integer index
into one of these tables instead of inline. Each category has a key function
that decides when two values are "the same": plain equality for strings,
canonical JSON for structured values such as coordinate pairs.

Public API:
    InternTable(name, key)      .intern(value) / .index_of(value) / .get(index)
    Tables()                    one InternTable per CATEGORIES entry
    Tables.to_json() / Tables.from_json(data)
"""

import json
from collections.abc import Callable, Iterable
from typing import Any

UNKNOWN = -1


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _identity(value: Any) -> Any:
    return value


class InternTable:
    def __init__(
        self,
        name: str,
        key: Callable[[Any], Any] = _identity,
        values: Iterable[Any] = (),
    ):
        self.name = name
        self._key = key
        self._values: list[Any] = []
        self._index: dict[Any, int] = {}
        for value in values:
            self._append(value)

    def _append(self, value: Any) -> int:
        index = len(self._values)
        self._values.append(value)
        # First occurrence wins if a loaded table carries duplicates
        self._index.setdefault(self._key(value), index)
        return index

    def intern(self, value: Any) -> int:
        """Return the index of value, appending it if unseen."""
        existing = self._index.get(self._key(value))
        if existing is not None:
            return existing
        return self._append(value)

    def index_of(self, value: Any) -> int | None:
        return self._index.get(self._key(value))

    def get(self, index: int, default: Any = None) -> Any:
        """Value at index, or default for UNKNOWN / out-of-range indices."""
        if 0 <= index < len(self._values):
            return self._values[index]
        return default

    def __contains__(self, index: int) -> bool:
        return 0 <= index < len(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self):
        return iter(self._values)

    @property
    def values(self) -> list[Any]:
        return list(self._values)


# Category name → key function. Order is the on-disk order.
CATEGORIES: dict[str, Callable[[Any], Any]] = {
    "periods": _identity,
    "locations": canonical_json,
    "scheduleTypes": _identity,
    "campuses": _identity,
    "attributes": _identity,
    "gradeBases": _identity,
    "dateRanges": _identity,
    "finalDates": _identity,
    "finalTimes": _identity,
    "restrictions": _identity,
}


class Tables:
    """The full set of interning tables for one encoding session or dataset."""

    def __init__(self, tables: dict[str, InternTable] | None = None):
        self._tables = {name: InternTable(name, key) for name, key in CATEGORIES.items()}
        if tables:
            self._tables.update(tables)

    def __getitem__(self, name: str) -> InternTable:
        return self._tables[name]

    def __iter__(self):
        return iter(self._tables.items())

    def to_json(self) -> dict[str, list[Any]]:
        return {name: table.values for name, table in self._tables.items()}

    @classmethod
    def from_json(cls, data: dict[str, list[Any]] | None) -> "Tables":
        """Rebuild tables from disk; missing categories start empty, unknown ones are dropped."""
        data = data or {}
        return cls({
            name: InternTable(name, key, data.get(name) or [])
            for name, key in CATEGORIES.items()
        })
