"""
Fetch client for the UIUC Course Explorer (courses.illinois.edu).

The site is server-rendered HTML; plain requests + BS4 is enough.

Discovered structure (verified by inspecting courses.illinois.edu):
  - /schedule                         → table of year links  /schedule/2025
  - /schedule/<year>                  → table of term links  /schedule/2025/fall
  - /schedule/<year>/<term>           → table of subject links  .../fall/CS
  - /schedule/<year>/<term>/<SUBJ>    → table of course links   .../CS/225
  - /schedule/<year>/<term>/<SUBJ>/<NUM> course page:
      title        — <span class="app-text-engage"> inside #app-course-info
      description  — first long <p> inside #app-course-info
      credit       — <p> containing "Credit: 4 hours."
      sections     — embedded JS: var sectionDataObj = [...];
                     each field (type, section, time, day, location,
                     instructor) is an HTML fragment with one
                     <div class="app-meeting"> per meeting

HTTP status → error type:
    403 → ForbiddenError    429 → RateLimitedError
    5xx, connection errors, timeouts → TransientError
    other 4xx, unparseable pages → FetchError
"""

import json
import logging
import re

import requests
from bs4 import BeautifulSoup

from dataset.models import Meeting, Period, Record, Section
from etl.errors import FetchCancelled, FetchError, ForbiddenError, RateLimitedError, TransientError
from etl.pacing import CancelToken
from etl.terms import Term

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

BASE_URL = "https://courses.illinois.edu"
CAMPUS = "Urbana-Champaign"
DEFAULT_CREDIT_HOURS = 3.0

HEADERS = {
    "User-Agent": "uiuc-course-crawler/1.0 (educational project)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Default section date ranges when the page does not carry one (MM/DD)
TERM_DATES = {
    "spring": ("01/15", "05/10"),
    "summer": ("06/01", "08/05"),
    "fall": ("08/25", "12/10"),
    "winter": ("01/03", "01/20"),
}

log = logging.getLogger(__name__)

_SECTION_DATA = re.compile(r"var sectionDataObj = (\[.*?\]);", re.S)
_TIME_RANGE = re.compile(
    r"(\d{1,2}):(\d{2})\s*(AM|PM)?\s*-\s*(\d{1,2}):(\d{2})\s*(AM|PM)?", re.I
)
_CREDIT = re.compile(r"(\d+(?:\.\d+)?)\s*hours?", re.I)
_NOT_AVAILABLE = {"n.a.", "n.a"}


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(HEADERS)
    return session


# ---------------------------------------------------------------------------
# HTTP helper
# ---------------------------------------------------------------------------

def get_text(
    session: requests.Session,
    url: str,
    timeout: float,
    cancel: CancelToken | None = None,
) -> str:
    """GET a page and return its text, raising a typed FetchError on failure."""
    if cancel is not None and cancel.is_set():
        raise FetchCancelled(f"cancelled before requesting {url}")
    try:
        resp = session.get(url, timeout=timeout)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise TransientError(f"{url}: {exc}") from exc
    except requests.RequestException as exc:
        raise FetchError(f"{url}: {exc}") from exc

    status = resp.status_code
    if status == 403:
        raise ForbiddenError(f"HTTP 403 for {url}", status)
    if status == 429:
        raise RateLimitedError(f"HTTP 429 for {url}", status)
    if status >= 500:
        raise TransientError(f"HTTP {status} for {url}", status)
    if status >= 400:
        raise FetchError(f"HTTP {status} for {url}", status)
    return resp.text


def _table_links(html: str, pattern: re.Pattern) -> list[re.Match]:
    soup = BeautifulSoup(html, "html.parser")
    matches = []
    for a in soup.select("table tbody tr td a[href]"):
        match = pattern.search(a["href"])
        if match:
            matches.append(match)
    return matches


# ---------------------------------------------------------------------------
# Term discovery
# ---------------------------------------------------------------------------

def available_terms(
    session: requests.Session | None = None,
    timeout: float = 15,
    years_to_check: int = 3,
) -> list[Term]:
    """Every term listed for the most recent few years. Raises FetchError if the site is unreachable."""
    session = session or new_session()
    years = sorted(
        {m.group(1) for m in _table_links(
            get_text(session, f"{BASE_URL}/schedule", timeout),
            re.compile(r"/schedule/(\d{4})$"),
        )},
        reverse=True,
    )
    terms = []
    for year in years[:years_to_check]:
        html = get_text(session, f"{BASE_URL}/schedule/{year}", timeout)
        for m in _table_links(html, re.compile(r"/schedule/\d{4}/(\w+)$")):
            try:
                terms.append(Term(year=year, season=m.group(1)))
            except ValueError:
                log.debug("Ignoring unknown term %s/%s", year, m.group(1))
    return terms


# ---------------------------------------------------------------------------
# Course page parsing
# ---------------------------------------------------------------------------

def _clock_to_minutes(hour: str, minute: str, meridiem: str) -> int:
    hours = int(hour) % 12
    if meridiem.upper() == "PM":
        hours += 12
    return hours * 60 + int(minute)


def parse_period(text: str) -> Period:
    """
    "03:00PM - 03:50PM" → timed (900, 950); "ARRANGED" → arranged;
    anything unparseable (blank, "TBA") → tba.
    """
    text = (text or "").strip()
    if text.upper() == "ARRANGED":
        return Period.arranged()
    match = _TIME_RANGE.search(text)
    if not match:
        return Period.tba()
    start_h, start_m, start_ap, end_h, end_m, end_ap = match.groups()
    end_ap = end_ap or start_ap or "PM"
    return Period.timed(
        _clock_to_minutes(start_h, start_m, start_ap or "AM"),
        _clock_to_minutes(end_h, end_m, end_ap),
    )


def _meeting_texts(fragment: str | None) -> list[str]:
    """Text of each <div class="app-meeting"> in a sectionDataObj field."""
    if not fragment:
        return []
    soup = BeautifulSoup(fragment, "html.parser")
    return [div.get_text(" ", strip=True) for div in soup.select(".app-meeting")]


def _instructors(fragment: str | None) -> tuple[str, ...]:
    if not fragment:
        return ()
    soup = BeautifulSoup(fragment, "html.parser")
    first = soup.select_one(".app-meeting")
    if first is None:
        return ()
    names = [s.strip() for s in first.get_text("\n").split("\n")]
    return tuple(n for n in names if n and n.upper() != "TBA")


def _default_date_range(term: Term) -> str:
    start, end = TERM_DATES[term.season]
    return f"{start}/{term.year} - {end}/{term.year}"


def _parse_section(obj: dict, course_title: str, credits: float, term: Term) -> Section:
    schedule_types = _meeting_texts(obj.get("type")) or ["Lecture"]
    section_ids = _meeting_texts(obj.get("section")) or [""]
    times = _meeting_texts(obj.get("time")) or [""]
    days = [("" if d in _NOT_AVAILABLE else d) for d in _meeting_texts(obj.get("day"))] or [""]
    locations = _meeting_texts(obj.get("location")) or ["TBA"]
    instructors = _instructors(obj.get("instructor")) or ("Staff",)
    date_range = obj.get("sectionDateRange") or _default_date_range(term)

    restrictions = ()
    if obj.get("restricted"):
        text = BeautifulSoup(obj["restricted"], "html.parser").get_text(" ", strip=True)
        restrictions = (text,) if text else ()

    meetings = []
    for i in range(max(len(times), len(days), len(locations))):
        time_text = times[i] if i < len(times) else times[0]
        room = (locations[i] if i < len(locations) else locations[0]) or "TBA"
        kind = schedule_types[i] if i < len(schedule_types) else schedule_types[0]
        online = room in _NOT_AVAILABLE or "online" in kind.lower() or time_text == "ARRANGED"
        meetings.append(Meeting(
            days=days[i] if i < len(days) else days[0],
            period=parse_period(time_text),
            room="ONLINE" if online else room,
            instructors=instructors,
            date_range=date_range,
        ))

    return Section(
        section_id=section_ids[0],
        crn=str(obj.get("crn", "")),
        title=obj.get("sectionTitle") or course_title,
        credits=credits,
        schedule_type=schedule_types[0],
        campus=CAMPUS,
        attributes=("Online",) if any(m.room == "ONLINE" for m in meetings) else (),
        restrictions=restrictions,
        meetings=tuple(meetings),
    )


def parse_course_page(html: str, key: str, term: Term) -> Record:
    """Parse one course page into a Record; raises FetchError if the section data is corrupt."""
    soup = BeautifulSoup(html, "html.parser")

    title_tag = (
        soup.select_one("#app-course-info span.app-text-engage")
        or soup.select_one(".app-text-engage")
    )
    title = title_tag.get_text(strip=True) if title_tag else key

    description = None
    credits = DEFAULT_CREDIT_HOURS
    for p in soup.select("#app-course-info p"):
        text = re.sub(r"\s+", " ", p.get_text(" ", strip=True))
        if "Credit:" in text:
            match = _CREDIT.search(text)
            if match:
                credits = float(match.group(1))
            continue
        if len(text) < 30 or text.startswith("This course satisfies") or "General Education" in text:
            continue
        if description is None:
            description = text

    match = _SECTION_DATA.search(html)
    if not match:
        log.debug("No section data found for %s", key)
        return Record(key=key, title=title, description=description)

    try:
        section_data = json.loads(match.group(1))
    except ValueError as exc:
        raise FetchError(f"unparseable section data for {key}: {exc}") from exc

    sections = tuple(_parse_section(obj, title, credits, term) for obj in section_data)
    return Record(key=key, title=title, description=description, sections=sections)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CourseExplorer:
    """Course Explorer client bound to one term."""

    def __init__(self, term: Term, session: requests.Session | None = None, timeout: float = 15):
        self.term = term
        self.session = session or new_session()
        self.timeout = timeout

    @property
    def term_url(self) -> str:
        return f"{BASE_URL}/schedule/{self.term.year}/{self.term.season}"

    def list_subjects(self, cancel: CancelToken | None = None) -> list[str]:
        html = get_text(self.session, self.term_url, self.timeout, cancel)
        pattern = re.compile(r"/schedule/\d{4}/\w+/([A-Z]+)$")
        subjects = list(dict.fromkeys(m.group(1) for m in _table_links(html, pattern)))
        log.info("  Found %d subjects.", len(subjects))
        return subjects

    def list_keys(self, subject: str, cancel: CancelToken | None = None) -> list[str]:
        html = get_text(self.session, f"{self.term_url}/{subject}", self.timeout, cancel)
        pattern = re.compile(r"/schedule/\d{4}/\w+/([A-Z]+)/(\d+[A-Z]*)$")
        return list(dict.fromkeys(f"{m.group(1)} {m.group(2)}" for m in _table_links(html, pattern)))

    def fetch(self, key: str, cancel: CancelToken) -> Record:
        subject, number = key.split(" ", 1)
        html = get_text(self.session, f"{self.term_url}/{subject}/{number}", self.timeout, cancel)
        return parse_course_page(html, key, self.term)
