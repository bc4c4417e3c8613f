"""
Merge engine: per-subject shards → one deduplicated term dataset.

Each shard was encoded against its own tables, so the same "Lecture" string
can sit at index 0 in CS.json and index 3 in MATH.json. For every shard we
intern its local table entries into one growing set of global tables, which
gives a local → global index map per category, then rewrite every section and
meeting through those maps before adding the record to the global course map.

Shards are processed in the order given (the term's subject list). Catalog keys
are unique per subject, so a key seen twice means a stale shard; the later
shard wins.

Local indices with no table entry are rewritten to UNKNOWN (-1) and counted
rather than raised.

Version 2 shards are upgraded to the current tuple shape on the way through.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from checkpoint.files import write_json_atomic
from checkpoint.shards import Shard
from dataset.decoder import CURRENT_VERSION, SUPPORTED_VERSIONS, UnsupportedVersion
from dataset.interning import UNKNOWN, Tables

log = logging.getLogger(__name__)


class MergedDataset(BaseModel):
    """On disk: {"courses": ..., "caches": ..., "updatedAt": ..., "version": 3}."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    courses: dict[str, list[Any]]
    caches: dict[str, list[Any]]
    updated_at: str
    version: int = CURRENT_VERSION

    def write(self, path: Path) -> None:
        write_json_atomic(path, self.model_dump(by_alias=True))

    @classmethod
    def read(cls, path: Path) -> "MergedDataset":
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class MalformedShard(ValueError):
    pass


class MergeEngine:
    def __init__(self):
        self.tables = Tables()
        self.courses: dict[str, list[Any]] = {}
        self.inconsistencies = 0
        self.overwritten = 0

    # ------------------------------------------------------------------
    # Index remapping
    # ------------------------------------------------------------------

    def _index_maps(self, shard: Shard) -> dict[str, list[int]]:
        """local index → global index, one list per category."""
        maps = {}
        for name, table in self.tables:
            local_values = shard.tables.get(name) or []
            maps[name] = [table.intern(value) for value in local_values]
        return maps

    def _lookup(self, maps: dict[str, list[int]], category: str, index: int) -> int:
        if index == UNKNOWN:
            return UNKNOWN
        mapping = maps[category]
        if isinstance(index, int) and 0 <= index < len(mapping):
            return mapping[index]
        self.inconsistencies += 1
        return UNKNOWN

    def _remap_meeting(self, meeting: list, maps, version: int) -> list:
        period, days, room, location, instructors, date_range = meeting[:6]
        final_date = final_time = UNKNOWN
        if version >= 3:
            final_date, final_time = meeting[6], meeting[7]
        return [
            self._lookup(maps, "periods", period),
            days,
            room,
            self._lookup(maps, "locations", location),
            instructors,
            self._lookup(maps, "dateRanges", date_range),
            self._lookup(maps, "finalDates", final_date),
            self._lookup(maps, "finalTimes", final_time),
        ]

    def _remap_section(self, section: list, maps, version: int) -> list:
        crn, meetings, credits, schedule_type, campus, attributes, grade_basis = section[:7]
        title, restrictions = "", []
        if version >= 3:
            title, restrictions = section[7], section[8]
        return [
            crn,
            [self._remap_meeting(m, maps, version) for m in meetings],
            credits,
            self._lookup(maps, "scheduleTypes", schedule_type),
            self._lookup(maps, "campuses", campus),
            [self._lookup(maps, "attributes", a) for a in attributes],
            self._lookup(maps, "gradeBases", grade_basis),
            title,
            [self._lookup(maps, "restrictions", r) for r in restrictions],
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_shard(self, shard: Shard) -> None:
        if shard.version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(
                f"shard {shard.subject} has unsupported version {shard.version}"
            )
        error = shard.shape_error()
        if error:
            raise MalformedShard(f"shard {shard.subject} is malformed: {error}")
        maps = self._index_maps(shard)
        for key, record in shard.records.items():
            title, sections, prerequisites, description, corequisites = record
            if key in self.courses:
                self.overwritten += 1
                log.debug("Course %s appears in more than one shard; keeping %s.", key, shard.subject)
            self.courses[key] = [
                title,
                {
                    section_id: self._remap_section(section, maps, shard.version)
                    for section_id, section in sections.items()
                },
                prerequisites,
                description,
                corequisites,
            ]

    def result(self) -> MergedDataset:
        return MergedDataset(
            courses=self.courses,
            caches=self.tables.to_json(),
            updated_at=datetime.now(timezone.utc).isoformat(),
            version=CURRENT_VERSION,
        )


def merge_all(shards: Iterable[Shard]) -> MergedDataset:
    """Merge every shard into one dataset with a single set of tables."""
    engine = MergeEngine()
    count = 0
    for shard in shards:
        engine.add_shard(shard)
        count += 1

    if engine.inconsistencies:
        log.warning(
            "  %d table references had no matching entry; stored as unknown.",
            engine.inconsistencies,
        )
    log.info("  Merged %d shards → %d courses.", count, len(engine.courses))
    return engine.result()
