"""
Write-through progress store for crash recovery and resume.

Directory structure:
    <data>/
      <term_code>/
        subjects/
          CS.json
          MATH.json
          ...
        progress.json
      <term_code>.json      (only created once the term is merged)
      index.tmp.json        (renamed to index.json when ALL terms complete)

progress.json caches the subject list and per-subject key lists so a resumed
run skips discovery, and tracks which subjects are completed, partial or
failed. Every mutating method saves the whole file before returning: if the
process dies right after a call, the state that call recorded is on disk.

Only the coordinating thread calls into this class. Workers never do.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from checkpoint.files import write_json_atomic
from checkpoint.shards import Shard, ShardStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Persisted schema
# ---------------------------------------------------------------------------

class PartialProgress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    completed: int
    total: int
    last_key: str = Field(alias="lastCourse")


class ProgressStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    successful: int = Field(0, alias="successfulCourses")
    failed: int = Field(0, alias="failedCourses")
    rate_limited: int = Field(0, alias="rateLimitCount")


class ProgressRecord(BaseModel):
    """Serialized with camelCase keys: termCode, completedSubjects, partialSubjects, ..."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    term_code: str
    term_name: str
    started_at: float = Field(default_factory=time.time)
    last_updated: float = Field(default_factory=time.time)
    total_subjects: int = 0
    total_keys: int = Field(0, alias="totalCourses")
    subjects: list[str] = Field(default_factory=list)
    key_lists: dict[str, list[str]] = Field(default_factory=dict)
    completed: list[str] = Field(default_factory=list, alias="completedSubjects")
    partial: dict[str, PartialProgress] = Field(default_factory=dict, alias="partialSubjects")
    failed: list[str] = Field(default_factory=list, alias="failedSubjects")
    failed_keys: dict[str, list[str]] = Field(default_factory=dict)
    stats: ProgressStats = Field(default_factory=ProgressStats)


@dataclass
class ResumeInfo:
    has_progress: bool
    completed: set[str]
    partial: dict[str, PartialProgress]
    stats: ProgressStats
    existing_records: dict[str, dict[str, list[Any]]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ProgressStore:
    def __init__(self, data_dir: Path, term_code: str, term_name: str):
        self.data_dir = data_dir
        self.term_dir = data_dir / term_code
        self.subjects_dir = self.term_dir / "subjects"
        self.progress_path = self.term_dir / "progress.json"
        self.shards = ShardStore(self.subjects_dir)
        self.subjects_dir.mkdir(parents=True, exist_ok=True)
        self.progress = self._load_or_create(term_code, term_name)

    @classmethod
    def load_or_create(cls, data_dir: Path, term_code: str, term_name: str) -> "ProgressStore":
        return cls(data_dir, term_code, term_name)

    def _load_or_create(self, term_code: str, term_name: str) -> ProgressRecord:
        if self.progress_path.exists():
            try:
                loaded = ProgressRecord.model_validate_json(
                    self.progress_path.read_text(encoding="utf-8")
                )
                log.info("  Loaded existing progress: %d courses scraped.", loaded.stats.successful)
                return loaded
            except (OSError, ValueError, ValidationError) as exc:
                log.warning("  Could not parse %s (%s); starting fresh.", self.progress_path, exc)
        return ProgressRecord(term_code=term_code, term_name=term_name)

    def save(self) -> None:
        self.progress.last_updated = time.time()
        write_json_atomic(self.progress_path, self.progress.model_dump(by_alias=True), indent=2)

    # ------------------------------------------------------------------
    # Discovery cache
    # ------------------------------------------------------------------

    def update_totals(self, total_subjects: int, total_keys: int) -> None:
        self.progress.total_subjects = total_subjects
        self.progress.total_keys = total_keys
        self.save()

    def cache_subjects(self, subjects: list[str]) -> None:
        self.progress.subjects = list(subjects)
        self.save()

    def cached_subjects(self) -> list[str] | None:
        return list(self.progress.subjects) or None

    def cache_key_lists(self, key_lists: dict[str, list[str]]) -> None:
        self.progress.key_lists = {subject: list(keys) for subject, keys in key_lists.items()}
        self.save()

    def cached_key_lists(self) -> dict[str, list[str]] | None:
        return dict(self.progress.key_lists) or None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def stats(self) -> ProgressStats:
        return self.progress.stats.model_copy()

    def record_success(self, count: int = 1) -> None:
        self.progress.stats.successful += count
        self.save()

    def record_failure(self, subject: str, key: str) -> None:
        self.progress.stats.failed += 1
        keys = self.progress.failed_keys.setdefault(subject, [])
        if key not in keys:
            keys.append(key)
        self.save()

    def record_rate_limits(self, count: int) -> None:
        self.progress.stats.rate_limited += count
        self.save()

    # ------------------------------------------------------------------
    # Subject state
    # ------------------------------------------------------------------

    def is_completed(self, subject: str) -> bool:
        return subject in self.progress.completed

    def is_failed(self, subject: str) -> bool:
        return subject in self.progress.failed

    def get_partial(self, subject: str) -> PartialProgress | None:
        return self.progress.partial.get(subject)

    def mark_partial(self, subject: str, completed: int, total: int, last_key: str) -> None:
        if self.is_completed(subject):
            return
        self.progress.partial[subject] = PartialProgress(
            completed=completed, total=total, last_key=last_key
        )
        self.save()

    def mark_completed(self, subject: str) -> None:
        """Completed is terminal: drop any partial or failed marker for the subject."""
        self.progress.partial.pop(subject, None)
        self.progress.failed_keys.pop(subject, None)
        if subject in self.progress.failed:
            self.progress.failed.remove(subject)
        if subject not in self.progress.completed:
            self.progress.completed.append(subject)
        self.save()

    def mark_failed(self, subject: str) -> None:
        if self.is_completed(subject):
            return
        if subject not in self.progress.failed:
            self.progress.failed.append(subject)
        self.save()

    def failed_subjects(self) -> list[str]:
        return list(self.progress.failed)

    def reset_subject(self, subject: str) -> None:
        """Forget everything recorded for the subject so it is crawled from scratch."""
        if subject in self.progress.completed:
            self.progress.completed.remove(subject)
        if subject in self.progress.failed:
            self.progress.failed.remove(subject)
        self.progress.partial.pop(subject, None)
        self.progress.failed_keys.pop(subject, None)
        self.save()

    # ------------------------------------------------------------------
    # Shard access
    # ------------------------------------------------------------------

    def load_shard(self, subject: str) -> Shard | None:
        return self.shards.load(subject)

    def get_existing_records(self, subject: str) -> dict[str, list[Any]]:
        """Encoded records already saved for the subject, keyed by catalog key."""
        shard = self.shards.load(subject)
        return dict(shard.records) if shard else {}

    # ------------------------------------------------------------------
    # Resume reporting
    # ------------------------------------------------------------------

    def resume_info(self) -> ResumeInfo:
        completed = set(self.progress.completed)
        partial = dict(self.progress.partial)
        existing = {}
        for subject in partial:
            records = self.get_existing_records(subject)
            if records:
                existing[subject] = records
        return ResumeInfo(
            has_progress=self.progress.stats.successful > 0 or bool(completed),
            completed=completed,
            partial=partial,
            stats=self.stats,
            existing_records=existing,
        )

    def percent_complete(self) -> float:
        if not self.progress.total_keys:
            return 0.0
        return 100.0 * self.progress.stats.successful / self.progress.total_keys

    def log_resume_status(self) -> None:
        info = self.resume_info()
        if not info.has_progress:
            log.info("  No existing progress found, starting fresh.")
            return

        log.info(
            "  Found progress.json: %d/%s courses complete (%.1f%%)",
            info.stats.successful,
            self.progress.total_keys or "?",
            self.percent_complete(),
        )
        log.info(
            "  Completed subjects: %d/%s",
            len(info.completed),
            self.progress.total_subjects or "?",
        )
        for subject, partial in info.partial.items():
            log.info("  Partial: %s (%d/%d courses)", subject, partial.completed, partial.total)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Delete shards and progress.json once the term's dataset is written."""
        shutil.rmtree(self.subjects_dir, ignore_errors=True)
        self.progress_path.unlink(missing_ok=True)
        if self.term_dir.exists() and not any(self.term_dir.iterdir()):
            self.term_dir.rmdir()
        log.info("  Cleaned up checkpoint files for %s.", self.progress.term_code)
