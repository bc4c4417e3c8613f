"""
Crawler entry point: crawl every requested term, then publish the manifest.

Run as a script:
    python app/app.py

Steps:
    1. Resolve terms     TERMS from the environment, else the NUM_TERMS latest
                         terms listed on courses.illinois.edu
    2. Stage manifest    data/index.tmp.json lists every term of this run
    3. Crawl terms       data/<code>/subjects/*.json + data/<code>/progress.json,
                         merged into data/<code>.json once a term completes
    4. Publish           index.tmp.json → index.json (only if every term completed)
    5. Clean up          remove checkpoint files of the published terms

A run stopped by a crash, Ctrl-C or a 403 block picks up where it left off
the next time it is started.

Exit status: 0 when every term completed and the manifest was promoted,
1 otherwise (including a hard block, which also tells the operator to wait).

Logs to stdout and logs/crawler.log (rotating, 5 MB max, 3 backups).
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script (python app/app.py)
sys.path.insert(0, str(Path(__file__).parent.parent))

from checkpoint.manifest import ManifestPublisher, TermEntry
from etl.course_explorer import CourseExplorer, available_terms, new_session
from etl.crawl import TermCrawler, TermStatus
from etl.pacing import CancelToken, PacedFetcher, RateLimitCounter
from etl.settings import Settings
from etl.terms import Term, guess_terms, latest_terms

LOG_DIR  = Path(__file__).parent.parent / "logs"
LOG_FILE = LOG_DIR / "crawler.log"

log = logging.getLogger("crawler")

BLOCKED_MESSAGE = (
    "The source server blocked this session. Progress has been saved. "
    "Wait at least an hour before running the crawler again; resuming sooner "
    "usually extends the block."
)


def _setup_logging() -> None:
    LOG_DIR.mkdir(exist_ok=True)
    fmt = logging.Formatter("%(asctime)s  %(levelname)s  %(message)s")

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(fmt)

    # Rotate at 5 MB, keep 3 backups
    rotating = logging.handlers.RotatingFileHandler(
        LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    rotating.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.addHandler(stream)
    root.addHandler(rotating)


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------

def resolve_terms(
    settings: Settings,
    cancel: CancelToken | None = None,
    rate_limits: RateLimitCounter | None = None,
) -> list[Term]:
    explicit = settings.explicit_terms()
    if explicit:
        log.info("[1/5] Using %d terms from TERMS.", len(explicit))
        return explicit

    log.info("[1/5] Discovering the %d latest terms…", settings.num_terms)
    cancel = cancel or CancelToken()
    fetcher = PacedFetcher.from_settings(settings, rate_limits=rate_limits)
    outcome = fetcher.call(
        "term list",
        lambda: available_terms(new_session(), timeout=settings.request_timeout),
        cancel,
    )
    if not outcome.ok:
        if cancel.is_set():
            return []
        log.error("  Could not discover terms: %s", outcome.error)
    terms = latest_terms(outcome.record or [], settings.num_terms)
    if not terms:
        terms = guess_terms(settings.num_terms)
        log.warning("  Term discovery failed; guessing from today's date.")
    for term in terms:
        log.info("  - %s (%s)", term.name, term.code)
    return terms


def run(settings: Settings, client_for=None) -> int:
    """Crawl, merge and publish. Returns the process exit status."""
    client_for = client_for or (
        lambda term: CourseExplorer(term, timeout=settings.request_timeout)
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    cancel = CancelToken()
    rate_limits = RateLimitCounter(settings.rate_limit_warning)

    terms = resolve_terms(settings, cancel, rate_limits)
    if cancel.is_set():
        log.error(BLOCKED_MESSAGE)
        return 1
    if not terms:
        log.error("No terms to crawl.")
        return 1

    log.info("[2/5] Staging manifest…")
    publisher = ManifestPublisher(settings.data_dir)
    publisher.stage([TermEntry(term=t.code, name=t.name) for t in terms])

    log.info("[3/5] Crawling %d terms…", len(terms))
    completed: list[TermCrawler] = []
    blocked = False

    for term in terms:
        crawler = TermCrawler(term, client_for(term), settings, cancel, rate_limits=rate_limits)
        result = crawler.run()
        log.info("  %s: %s (%d fetched, %d failed)",
                 term.name, result.status.value, result.fetched, result.failed)

        if result.status is TermStatus.COMPLETED:
            publisher.complete(term.code)
            completed.append(crawler)
        elif result.status is TermStatus.ABORTED:
            blocked = cancel.reason is not None and cancel.reason.startswith("blocked")
            break

    log.info("[4/5] Publishing manifest…")
    if not publisher.promote():
        if not completed:
            publisher.discard()
        if blocked:
            log.error(BLOCKED_MESSAGE)
        log.error("Run incomplete; index.json left unchanged.")
        return 1

    log.info("[5/5] Cleaning up checkpoints…")
    for crawler in completed:
        crawler.cleanup()

    log.info("=== Crawl complete: %d terms published ===", len(completed))
    return 0


def main() -> int:
    load_dotenv()
    _setup_logging()
    log.info("=== Course crawler — starting up ===")
    return run(Settings.from_env())


if __name__ == "__main__":
    sys.exit(main())
