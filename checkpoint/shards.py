"""
Subject shards: one JSON file per subject holding its encoded records and the
tables they index into.

    <data>/<term_code>/subjects/<SUBJECT>.json
    {"subject": "CS", "scrapedAt": ..., "courseCount": 2, "version": 3,
     "courses": {"CS 225": [...], ...}, "caches": {"periods": [...], ...}}

Every save is a full snapshot that replaces the previous file atomically, so a
crash leaves either the old shard or the new one, never half of each.

A shard that does not parse, or whose records are not well-formed tuples for
its version, loads as None and the subject is crawled again.
"""

import logging
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from checkpoint.files import write_json_atomic
from dataset.decoder import SUPPORTED_VERSIONS, record_shape_error
from dataset.encoder import FORMAT_VERSION
from dataset.interning import Tables

log = logging.getLogger(__name__)

# Shards written before the version field existed use the older tuple shape.
UNVERSIONED = 2


class Shard(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subject: str
    scraped_at: float
    record_count: int = Field(alias="courseCount")
    version: int = UNVERSIONED
    records: dict[str, list[Any]] = Field(alias="courses")
    tables: dict[str, list[Any]] = Field(alias="caches")

    def shape_error(self) -> str | None:
        if self.version not in SUPPORTED_VERSIONS:
            return None
        for key, record in self.records.items():
            error = record_shape_error(record, self.version)
            if error:
                return f"{key}: {error}"
        return None


class ShardStore:
    def __init__(self, directory: Path):
        self.directory = directory

    def path(self, subject: str) -> Path:
        return self.directory / f"{subject}.json"

    def save(
        self,
        subject: str,
        records: dict[str, list[Any]],
        tables: Tables,
        version: int = FORMAT_VERSION,
    ) -> Shard:
        shard = Shard(
            subject=subject,
            scraped_at=time.time(),
            record_count=len(records),
            version=version,
            records=records,
            tables=tables.to_json(),
        )
        write_json_atomic(self.path(subject), shard.model_dump(by_alias=True))
        return shard

    def load(self, subject: str) -> Shard | None:
        """Return the subject's shard, or None if it is missing, unreadable or malformed."""
        path = self.path(subject)
        if not path.exists():
            return None
        try:
            shard = Shard.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as exc:
            log.warning("Could not parse %s (%s); starting %s fresh.", path.name, exc, subject)
            return None

        error = shard.shape_error()
        if error:
            log.warning("Malformed record in %s (%s); starting %s fresh.", path.name, error, subject)
            return None
        return shard

