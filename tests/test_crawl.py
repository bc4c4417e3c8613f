import json

import pytest

from conftest import FakeCatalog
from dataset.decoder import decode_record
from dataset.encoder import FORMAT_VERSION, NULL_LOCATION
from dataset.interning import UNKNOWN, Tables
from dataset.merge import MergedDataset
from etl.crawl import TermCrawler, TermStatus
from etl.pacing import CancelToken
from etl.terms import Term

FALL_2025 = Term(year="2025", season="fall")

CS_KEYS = [f"CS {n}" for n in range(101, 106)]


def _crawler(catalog, settings, cancel=None):
    return TermCrawler(FALL_2025, catalog, settings, cancel or CancelToken())


def _shard_keys(crawler, subject="CS"):
    shard = crawler.progress.load_shard(subject)
    return set(shard.records) if shard else set()


class TestTermCrawl:
    """Test a full term crawl against an in-memory catalog."""

    def test_complete_run_writes_merged_dataset(self, settings):
        catalog = FakeCatalog({"CS": CS_KEYS, "MATH": ["MATH 241", "MATH 347"], "ZOO": []})
        crawler = _crawler(catalog, settings)
        result = crawler.run()

        assert result.status is TermStatus.COMPLETED
        assert result.fetched == 7
        dataset = MergedDataset.read(crawler.dataset_path)
        assert set(dataset.courses) == set(CS_KEYS) | {"MATH 241", "MATH 347"}
        assert dataset.caches["scheduleTypes"] == ["Lecture"]
        assert dataset.version == FORMAT_VERSION

        tables = Tables.from_json(dataset.caches)
        record = decode_record("CS 101", dataset.courses["CS 101"], tables)
        assert record.sections[0].meetings[0].period.canonical() == "1000 - 1050"

    def test_checkpoints_remain_until_cleanup(self, settings):
        crawler = _crawler(FakeCatalog({"CS": CS_KEYS}), settings)
        crawler.run()
        assert crawler.progress.progress_path.exists()
        crawler.cleanup()
        assert not crawler.progress.term_dir.exists()
        assert crawler.dataset_path.exists()

    def test_failed_key_keeps_term_incomplete(self, settings):
        catalog = FakeCatalog({"CS": CS_KEYS}, failing=["CS 103"])
        crawler = _crawler(catalog, settings)
        result = crawler.run()

        assert result.status is TermStatus.FAILED
        assert result.failed == 1
        assert not crawler.dataset_path.exists()
        assert _shard_keys(crawler) == set(CS_KEYS) - {"CS 103"}
        assert not crawler.progress.is_completed("CS")
        assert crawler.progress.progress.failed_keys == {"CS": ["CS 103"]}

    def test_resume_fetches_only_missing_keys(self, settings):
        _crawler(FakeCatalog({"CS": CS_KEYS}, failing=["CS 103"]), settings).run()

        catalog = FakeCatalog({"CS": CS_KEYS})
        crawler = _crawler(catalog, settings)
        result = crawler.run()

        assert result.status is TermStatus.COMPLETED
        assert catalog.fetched == ["CS 103"]
        assert catalog.discovery_calls == 0
        assert crawler.progress.is_completed("CS")

    def test_rerun_of_completed_term_fetches_nothing(self, settings):
        _crawler(FakeCatalog({"CS": CS_KEYS}), settings).run()
        catalog = FakeCatalog({"CS": CS_KEYS})
        result = _crawler(catalog, settings).run()
        assert result.status is TermStatus.COMPLETED
        assert catalog.fetched == []

    def test_shard_save_cadence(self, settings, monkeypatch):
        crawler = _crawler(FakeCatalog({"CS": CS_KEYS}), settings)
        saved_sizes = []
        original_save = crawler.progress.shards.save

        def recording_save(subject, records, tables, **kwargs):
            saved_sizes.append(len(records))
            return original_save(subject, records, tables, **kwargs)

        monkeypatch.setattr(crawler.progress.shards, "save", recording_save)
        crawler.run()

        assert saved_sizes[-1] == len(CS_KEYS)
        previous = 0
        for size in saved_sizes:
            assert size - previous <= settings.save_interval
            previous = size

    def test_success_count_trails_saved_shard(self, settings, monkeypatch):
        crawler = _crawler(FakeCatalog({"CS": CS_KEYS}), settings)
        on_disk = []
        original_save = crawler.progress.shards.save

        def checking_save(subject, records, tables, **kwargs):
            # Only records already in a saved shard may be counted
            assert crawler.progress.stats.successful <= (on_disk[-1] if on_disk else 0)
            shard = original_save(subject, records, tables, **kwargs)
            on_disk.append(len(records))
            return shard

        monkeypatch.setattr(crawler.progress.shards, "save", checking_save)
        crawler.run()

        assert crawler.progress.stats.successful == len(CS_KEYS)


class TestAbort:
    """Test hard-block escalation and recovery."""

    def test_block_stops_dispatch_and_keeps_finished_work(self, settings):
        catalog = FakeCatalog({"CS": CS_KEYS}, blocked=["CS 103"], delay=0.05)
        cancel = CancelToken()
        crawler = _crawler(catalog, settings, cancel)
        result = crawler.run()

        assert result.status is TermStatus.ABORTED
        assert cancel.reason == "blocked on CS 103"
        assert "CS 105" not in catalog.fetched
        saved = _shard_keys(crawler)
        assert {"CS 101", "CS 102"} <= saved
        assert "CS 103" not in saved
        assert crawler.progress.is_failed("CS")
        assert crawler.progress.get_partial("CS").completed == len(saved)
        assert not crawler.dataset_path.exists()

    def test_block_during_later_subject_skips_the_rest(self, settings):
        catalog = FakeCatalog({"CS": CS_KEYS, "ECE": ["ECE 110"], "MATH": ["MATH 241"]}, blocked=["ECE 110"])
        crawler = _crawler(catalog, settings)
        result = crawler.run()

        assert result.status is TermStatus.ABORTED
        assert crawler.progress.is_completed("CS")
        assert "MATH 241" not in catalog.fetched

    def test_resume_after_block(self, settings):
        first = _crawler(FakeCatalog({"CS": CS_KEYS}, blocked=["CS 103"], delay=0.05), settings)
        first.run()
        already_saved = _shard_keys(first)

        catalog = FakeCatalog({"CS": CS_KEYS})
        result = _crawler(catalog, settings).run()

        assert result.status is TermStatus.COMPLETED
        assert set(catalog.fetched) == set(CS_KEYS) - already_saved


class TestCheckpointRecovery:
    """Test resuming from damaged or older checkpoints."""

    def test_corrupt_shard_restarts_subject(self, settings):
        crawler = _crawler(FakeCatalog({"CS": CS_KEYS}, failing=["CS 105"]), settings)
        crawler.run()
        crawler.progress.shards.path("CS").write_text("{truncated", encoding="utf-8")

        catalog = FakeCatalog({"CS": CS_KEYS})
        result = _crawler(catalog, settings).run()
        assert result.status is TermStatus.COMPLETED
        assert sorted(catalog.fetched) == CS_KEYS

    def test_legacy_shard_is_upgraded_on_resume(self, settings):
        crawler = _crawler(FakeCatalog({"CS": ["CS 101", "CS 102"]}, failing=["CS 101", "CS 102"]), settings)
        crawler.run()

        # Subject files from before the version field: no "version", 7-field sections
        legacy = {
            "subject": "CS",
            "scrapedAt": 1735689600000,
            "courseCount": 1,
            "courses": {
                "CS 101": ["Intro", {"A": ["1", [[0, "MW", "", 0, [], UNKNOWN, UNKNOWN, UNKNOWN]], 3, 0, 0, [], UNKNOWN]},
                           [], None, []],
            },
            "caches": {"periods": ["0900 - 0950"], "scheduleTypes": ["Lecture"], "locations": [NULL_LOCATION]},
        }
        crawler.progress.shards.path("CS").write_text(json.dumps(legacy), encoding="utf-8")

        catalog = FakeCatalog({"CS": ["CS 101", "CS 102"]})
        resumed = _crawler(catalog, settings)
        assert resumed.run().status is TermStatus.COMPLETED
        assert catalog.fetched == ["CS 102"]

        dataset = MergedDataset.read(resumed.dataset_path)
        tables = Tables.from_json(dataset.caches)
        old = decode_record("CS 101", dataset.courses["CS 101"], tables)
        assert old.title == "Intro"
        assert old.sections[0].schedule_type == "Lecture"
        assert old.sections[0].meetings[0].period.canonical() == "0900 - 0950"

    def test_completed_subject_with_corrupt_shard_is_crawled_again(self, settings):
        _crawler(FakeCatalog({"CS": CS_KEYS, "MATH": ["MATH 241"]}), settings).run()
        shard_path = settings.data_dir / FALL_2025.code / "subjects" / "CS.json"
        shard_path.write_text("{truncated", encoding="utf-8")

        catalog = FakeCatalog({"CS": CS_KEYS, "MATH": ["MATH 241"]})
        crawler = _crawler(catalog, settings)
        result = crawler.run()

        assert result.status is TermStatus.COMPLETED
        assert sorted(catalog.fetched) == CS_KEYS
        dataset = MergedDataset.read(crawler.dataset_path)
        assert set(dataset.courses) == set(CS_KEYS) | {"MATH 241"}

    def test_malformed_shard_restarts_subject(self, settings):
        crawler = _crawler(FakeCatalog({"CS": CS_KEYS}, failing=["CS 105"]), settings)
        crawler.run()
        malformed = {
            "subject": "CS", "scrapedAt": 0, "courseCount": 1, "version": FORMAT_VERSION,
            "courses": {"CS 101": ["Intro"]}, "caches": {},
        }
        crawler.progress.shards.path("CS").write_text(json.dumps(malformed), encoding="utf-8")

        catalog = FakeCatalog({"CS": CS_KEYS})
        resumed = _crawler(catalog, settings)
        assert resumed.run().status is TermStatus.COMPLETED
        assert sorted(catalog.fetched) == CS_KEYS
        dataset = MergedDataset.read(resumed.dataset_path)
        assert dataset.courses["CS 101"][0] == "Course CS 101"


@pytest.mark.parametrize("subjects", [{}, {"CS": []}])
def test_empty_catalog_completes(settings, subjects):
    crawler = _crawler(FakeCatalog(subjects), settings)
    result = crawler.run()
    assert result.status is TermStatus.COMPLETED
    assert MergedDataset.read(crawler.dataset_path).courses == {}
