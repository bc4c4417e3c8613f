import threading
import time

import pytest

from dataset.models import Location, Meeting, Period, Record, Section
from etl.errors import FetchError, ForbiddenError
from etl.settings import Settings


def make_record(key: str, schedule_type: str = "Lecture", room: str = "1404 Siebel Center") -> Record:
    """A small but fully populated record."""
    return Record(
        key=key,
        title=f"Course {key}",
        description=f"Description of {key}.",
        sections=(
            Section(
                section_id="A",
                crn=str(10000 + sum(map(ord, key))),
                title=f"Course {key}",
                credits=3,
                schedule_type=schedule_type,
                campus="Urbana-Champaign",
                attributes=("Online",),
                grade_basis="Letter Grade",
                restrictions=("Restricted to majors",),
                meetings=(
                    Meeting(
                        days="MWF",
                        period=Period.timed(600, 650),
                        room=room,
                        location=Location(lat=40.11, long=-88.22),
                        instructors=("Smith, J (P)",),
                        date_range="08/25/2025 - 12/10/2025",
                        final_date="Dec 12, 2025",
                        final_time="1:30 pm - 4:30 pm",
                    ),
                ),
            ),
        ),
        prerequisites=["and", {"id": "CS 124"}, ["or", {"id": "CS 173"}, {"id": "MATH 213"}]],
        corequisites=("CS 126",),
    )


class FakeCatalog:
    """
    In-memory catalog client.

    subjects: subject → keys. `blocked` keys raise ForbiddenError. `delay`
    slows every successful fetch so tests can control interleaving.
    Every fetch is recorded in `fetched` together with whether the session
    was already cancelled when the request went out.
    """

    def __init__(self, subjects: dict[str, list[str]], blocked=(), failing=(), delay: float = 0.0):
        self.subjects = subjects
        self.blocked = set(blocked)
        self.failing = set(failing)
        self.delay = delay
        self.fetched: list[str] = []
        self.fetched_after_cancel: list[str] = []
        self.discovery_calls = 0
        self._lock = threading.Lock()

    def list_subjects(self, cancel):
        self.discovery_calls += 1
        return list(self.subjects)

    def list_keys(self, subject, cancel):
        with self._lock:
            self.discovery_calls += 1
        return list(self.subjects[subject])

    def fetch(self, key, cancel):
        with self._lock:
            self.fetched.append(key)
            if cancel.is_set():
                self.fetched_after_cancel.append(key)
        if key in self.blocked:
            raise ForbiddenError(f"HTTP 403 for {key}", 403)
        if key in self.failing:
            raise FetchError(f"HTTP 404 for {key}", 404)
        if self.delay:
            time.sleep(self.delay)
        return make_record(key)


@pytest.fixture
def settings(tmp_path):
    """Settings with pacing switched off."""
    return Settings(
        data_dir=tmp_path / "data",
        concurrency=2,
        request_delay=0,
        min_request_delay=0,
        save_interval=2,
        max_retries=3,
        retry_backoff=0,
    )
