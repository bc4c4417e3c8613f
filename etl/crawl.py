"""
Per-term crawl coordinator.

For one term this:
  1. discovers subjects and each subject's course keys (cached in
     progress.json, so a resumed run skips straight to fetching)
  2. for every subject not yet completed, fetches only the keys missing
     from its shard, on a bounded worker pool, encoding each record as it
     arrives and saving the shard every SAVE_INTERVAL new records; a
     completed subject whose shard no longer loads is crawled again
  3. once every subject is completed, merges all shards into
     <data>/<term_code>.json

Workers only fetch. All shard and progress writes happen here, on the
coordinating thread, one at a time.

Checkpoint files are left in place after the merge; the caller removes them
with cleanup() once the manifest has been published.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from checkpoint.progress import ProgressStore
from dataset.decoder import decode_record
from dataset.encoder import FORMAT_VERSION, Encoder, Locator
from dataset.interning import Tables
from dataset.merge import merge_all
from etl import pool
from etl.pacing import (
    CancelToken,
    FetchOutcome,
    OutcomeStatus,
    PacedFetcher,
    RateLimitCounter,
)
from etl.settings import Settings
from etl.terms import Term

log = logging.getLogger(__name__)


class CatalogClient(Protocol):
    def list_subjects(self, cancel: CancelToken) -> list[str]:
        ...

    def list_keys(self, subject: str, cancel: CancelToken) -> list[str]:
        ...

    def fetch(self, key: str, cancel: CancelToken) -> Any:
        ...


class TermStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class TermResult:
    term: Term
    status: TermStatus
    fetched: int = 0
    failed: int = 0


class TermCrawler:
    def __init__(
        self,
        term: Term,
        client: CatalogClient,
        settings: Settings,
        cancel: CancelToken,
        rate_limits: RateLimitCounter | None = None,
        locate: Locator | None = None,
    ):
        self.term = term
        self.client = client
        self.settings = settings
        self.cancel = cancel
        self.locate = locate
        self.rate_limits = rate_limits or RateLimitCounter(settings.rate_limit_warning)
        self.fetcher = PacedFetcher.from_settings(settings, client, self.rate_limits)
        self.progress = ProgressStore.load_or_create(settings.data_dir, term.code, term.name)
        self.dataset_path = settings.data_dir / f"{term.code}.json"
        self._fetched = 0
        self._failed = 0
        self._rate_limits_seen = self.rate_limits.count

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _list_keys(self, subject: str, cancel: CancelToken) -> FetchOutcome:
        return self.fetcher.call(subject, lambda: self.client.list_keys(subject, cancel), cancel)

    def discover(self) -> dict[str, list[str]] | None:
        """Subject → catalog keys, from cache or the network. None if discovery was cut short."""
        subjects = self.progress.cached_subjects()
        if subjects is None:
            log.info("  Discovering subjects…")
            outcome = self.fetcher.call(
                "subject list", lambda: self.client.list_subjects(self.cancel), self.cancel
            )
            if not outcome.ok:
                log.error("  Could not fetch subject list for %s: %s", self.term.name, outcome.error)
                return None
            subjects = list(outcome.record)
            self.progress.cache_subjects(subjects)
        else:
            log.info("  Using cached subject list (%d subjects).", len(subjects))

        key_lists = self.progress.cached_key_lists() or {}
        missing = [s for s in subjects if s not in key_lists]
        if missing:
            log.info("  Discovering course lists for %d subjects…", len(missing))
            complete = True
            for outcome in pool.run(missing, self.settings.concurrency, self._list_keys, self.cancel):
                if outcome.ok:
                    key_lists[outcome.key] = list(outcome.record)
                elif outcome.status is OutcomeStatus.FAILED:
                    log.warning("  No course list for %s (%s); treating as empty.", outcome.key, outcome.error)
                    key_lists[outcome.key] = []
                else:
                    complete = False
            # Keep whatever was discovered so a resumed run does not repeat it
            self.progress.cache_key_lists(key_lists)
            if not complete:
                return None

        total_keys = sum(len(key_lists[s]) for s in subjects)
        self.progress.update_totals(len(subjects), total_keys)
        log.info("  %d subjects, %d courses.", len(subjects), total_keys)
        return {s: key_lists[s] for s in subjects}

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------

    def _open_shard(self, subject: str) -> tuple[dict[str, list], Encoder]:
        """Existing records plus an encoder seeded with the shard's tables."""
        shard = self.progress.load_shard(subject)
        if shard is None:
            return {}, Encoder(locate=self.locate)

        old_tables = Tables.from_json(shard.tables)
        if shard.version == FORMAT_VERSION:
            return dict(shard.records), Encoder(old_tables, locate=self.locate)

        log.info("  Upgrading %s shard from version %d.", subject, shard.version)
        encoder = Encoder(locate=self.locate)
        records = {
            key: encoder.encode(decode_record(key, data, old_tables, shard.version))
            for key, data in shard.records.items()
        }
        return records, encoder

    def _save_shard(self, subject: str, records: dict, encoder: Encoder, new_records: int = 0) -> None:
        """Save the shard, then count the records it added as successful."""
        self.progress.shards.save(subject, records, encoder.tables)
        if new_records:
            self.progress.record_success(new_records)

    def _checkpoint(
        self, subject: str, records: dict, encoder: Encoder, new_records: int, total: int, last_key: str
    ) -> None:
        self._save_shard(subject, records, encoder, new_records)
        self.progress.mark_partial(subject, len(records), total, last_key)

    def crawl_subject(self, subject: str, keys: list[str]) -> bool:
        """Fetch the subject's missing keys. True if every key is now recorded."""
        records, encoder = self._open_shard(subject)
        remaining = [k for k in keys if k not in records]

        if records:
            log.info("  → Resuming %s from course #%d", subject, len(records) + 1)
        if not remaining:
            self._save_shard(subject, records, encoder)
            self.progress.mark_completed(subject)
            return True

        since_save = 0
        last_key = ""
        try:
            for outcome in pool.run(remaining, self.settings.concurrency, self.fetcher.fetch, self.cancel):
                if outcome.ok:
                    records[outcome.key] = encoder.encode(outcome.record)
                    last_key = outcome.key
                    since_save += 1
                    self._fetched += 1
                    if since_save >= self.settings.save_interval:
                        self._checkpoint(subject, records, encoder, since_save, len(keys), last_key)
                        since_save = 0
                elif outcome.status is OutcomeStatus.FAILED:
                    self._failed += 1
                    self.progress.record_failure(subject, outcome.key)
        except KeyboardInterrupt:
            log.warning("Interrupted; saving %s before stopping.", subject)
            self.cancel.cancel("interrupted")
        finally:
            self._save_shard(subject, records, encoder, since_save)

        missing = len(keys) - sum(1 for k in keys if k in records)
        if self.cancel.is_set():
            self.progress.mark_partial(subject, len(records), len(keys), last_key)
            self.progress.mark_failed(subject)
            log.warning("  %s: stopped at %d/%d courses.", subject, len(records), len(keys))
            return False
        if missing:
            self.progress.mark_partial(subject, len(records), len(keys), last_key)
            log.warning("  %s: %d/%d courses; %d failed and will be retried next run.",
                        subject, len(records), len(keys), missing)
            return False

        self.progress.mark_completed(subject)
        log.info("  %s: %d/%d courses.", subject, len(records), len(keys))
        return True

    def _flush_rate_limits(self) -> None:
        count = self.rate_limits.count
        if count > self._rate_limits_seen:
            self.progress.record_rate_limits(count - self._rate_limits_seen)
            self._rate_limits_seen = count

    # ------------------------------------------------------------------
    # Term
    # ------------------------------------------------------------------

    def _result(self, status: TermStatus) -> TermResult:
        return TermResult(self.term, status, fetched=self._fetched, failed=self._failed)

    def run(self) -> TermResult:
        log.info("=== %s (%s) ===", self.term.name, self.term.code)
        self.progress.log_resume_status()

        key_lists = self.discover()
        if key_lists is None:
            return self._result(TermStatus.ABORTED if self.cancel.is_set() else TermStatus.FAILED)

        subjects = list(key_lists)
        for i, subject in enumerate(subjects, 1):
            if self.cancel.is_set():
                break
            if self.progress.is_completed(subject):
                if self.progress.load_shard(subject) is not None:
                    continue
                log.warning("  %s was completed but its shard is missing or unreadable; crawling it again.", subject)
                self.progress.reset_subject(subject)
            log.info("[%d/%d] %s (%d courses)", i, len(subjects), subject, len(key_lists[subject]))
            self.crawl_subject(subject, key_lists[subject])
            self._flush_rate_limits()

        self._flush_rate_limits()
        if self.cancel.is_set():
            log.error("  %s aborted: %s", self.term.name, self.cancel.reason or "cancelled")
            return self._result(TermStatus.ABORTED)

        incomplete = [s for s in subjects if not self.progress.is_completed(s)]
        if incomplete:
            log.error("  %s incomplete; subjects left: %s", self.term.name, ", ".join(incomplete))
            return self._result(TermStatus.FAILED)

        shards, lost = [], []
        for subject in subjects:
            shard = self.progress.load_shard(subject)
            if shard is None:
                self.progress.reset_subject(subject)
                lost.append(subject)
            else:
                shards.append(shard)
        if lost:
            log.error("  %s: shards lost before merging, will be crawled again: %s", self.term.name, ", ".join(lost))
            return self._result(TermStatus.FAILED)

        log.info("  Merging %d subject shards…", len(shards))
        dataset = merge_all(shards)
        dataset.write(self.dataset_path)
        log.info("  Saved %d courses → %s", len(dataset.courses), self.dataset_path.name)
        return self._result(TermStatus.COMPLETED)

    def cleanup(self) -> None:
        self.progress.cleanup()
