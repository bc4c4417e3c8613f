"""
Record → positional tuple encoder.

One Encoder is one encoding session (normally one subject's shard). It owns a
Tables instance and replaces every categorical field with an index into it:

    record  = [title, {section_id: section}, prerequisites, description, corequisites]
    section = [crn, meetings, credits, schedule_type, campus, [attributes],
               grade_basis, section_title, [restrictions]]
    meeting = [period, days, room, location, instructors,
               date_range, final_date, final_time]

Absent categorical values are written as UNKNOWN (-1).

Building-name → coordinate matching lives outside this module; pass it in as
`locate(room) -> Location | None`. A meeting that already carries a location
is not looked up again.
"""

from collections.abc import Callable

from dataset.interning import UNKNOWN, Tables
from dataset.models import Location, Meeting, Period, Record, Section

FORMAT_VERSION = 3

NULL_LOCATION = {"lat": None, "long": None}

Locator = Callable[[str], Location | None]


def location_value(location: Location | None) -> dict:
    if location is None:
        return dict(NULL_LOCATION)
    return {"lat": location.lat, "long": location.long}


class Encoder:
    def __init__(self, tables: Tables | None = None, locate: Locator | None = None):
        self.tables = tables if tables is not None else Tables()
        self._locate = locate

    def _index(self, category: str, value) -> int:
        if value is None:
            return UNKNOWN
        return self.tables[category].intern(value)

    def encode_period(self, period: Period) -> int:
        return self.tables["periods"].intern(period.canonical())

    def encode_location(self, meeting: Meeting) -> int:
        location = meeting.location
        if location is None and self._locate is not None and meeting.room:
            location = self._locate(meeting.room)
        return self.tables["locations"].intern(location_value(location))

    def encode_meeting(self, meeting: Meeting) -> list:
        return [
            self.encode_period(meeting.period),
            meeting.days,
            meeting.room,
            self.encode_location(meeting),
            list(meeting.instructors),
            self._index("dateRanges", meeting.date_range),
            self._index("finalDates", meeting.final_date),
            self._index("finalTimes", meeting.final_time),
        ]

    def encode_section(self, section: Section) -> list:
        return [
            section.crn,
            [self.encode_meeting(m) for m in section.meetings],
            section.credits,
            self._index("scheduleTypes", section.schedule_type),
            self._index("campuses", section.campus),
            [self._index("attributes", a) for a in section.attributes],
            self._index("gradeBases", section.grade_basis),
            section.title,
            [self._index("restrictions", r) for r in section.restrictions],
        ]

    def encode(self, record: Record) -> list:
        sections = {s.section_id: self.encode_section(s) for s in record.sections}
        return [
            record.title,
            sections,
            record.prerequisites,
            record.description,
            list(record.corequisites),
        ]
