"""
Positional tuple → Record decoder.

Reads both on-disk formats:
    version 3  sections have 9 fields, meetings have 8
    version 2  sections have 7 fields (no section title, no restrictions),
               meetings have 6 (no final-exam date/time)

The caller passes the version from the enclosing shard or dataset file;
tuple lengths are never used to guess it.
"""

from dataset.encoder import FORMAT_VERSION
from dataset.interning import UNKNOWN, Tables
from dataset.models import Location, Meeting, Period, Record, Section

CURRENT_VERSION = FORMAT_VERSION
LEGACY_VERSION = 2
SUPPORTED_VERSIONS = (LEGACY_VERSION, CURRENT_VERSION)


class UnsupportedVersion(ValueError):
    pass


def _check(version: int) -> None:
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(f"unsupported record format version {version}")


def _location(value) -> Location | None:
    if not value or value.get("lat") is None or value.get("long") is None:
        return None
    return Location(lat=value["lat"], long=value["long"])


def decode_meeting(data: list, tables: Tables, version: int = CURRENT_VERSION) -> Meeting:
    _check(version)
    period_idx, days, room, location_idx, instructors, date_range_idx = data[:6]
    final_date_idx = final_time_idx = UNKNOWN
    if version >= 3:
        final_date_idx, final_time_idx = data[6], data[7]
    return Meeting(
        days=days,
        period=Period.from_canonical(tables["periods"].get(period_idx)),
        room=room,
        location=_location(tables["locations"].get(location_idx)),
        instructors=tuple(instructors),
        date_range=tables["dateRanges"].get(date_range_idx),
        final_date=tables["finalDates"].get(final_date_idx),
        final_time=tables["finalTimes"].get(final_time_idx),
    )


def decode_section(
    section_id: str, data: list, tables: Tables, version: int = CURRENT_VERSION
) -> Section:
    _check(version)
    crn, meetings, credits, schedule_idx, campus_idx, attribute_idxs, grade_idx = data[:7]
    title = ""
    restriction_idxs: list[int] = []
    if version >= 3:
        title, restriction_idxs = data[7], data[8]
    attributes = tables["attributes"]
    restrictions = tables["restrictions"]
    return Section(
        section_id=section_id,
        crn=crn,
        title=title,
        credits=credits,
        schedule_type=tables["scheduleTypes"].get(schedule_idx),
        campus=tables["campuses"].get(campus_idx),
        attributes=tuple(attributes.get(i) for i in attribute_idxs if i in attributes),
        grade_basis=tables["gradeBases"].get(grade_idx),
        restrictions=tuple(restrictions.get(i) for i in restriction_idxs if i in restrictions),
        meetings=tuple(decode_meeting(m, tables, version) for m in meetings),
    )


def decode_record(key: str, data: list, tables: Tables, version: int = CURRENT_VERSION) -> Record:
    _check(version)
    title, sections, prerequisites, description, corequisites = data
    return Record(
        key=key,
        title=title,
        description=description,
        sections=tuple(
            decode_section(section_id, section, tables, version)
            for section_id, section in sections.items()
        ),
        prerequisites=prerequisites,
        corequisites=tuple(corequisites),
    )


# Minimum tuple lengths per version: (section, meeting). Longer tuples are
# accepted; only the leading fields are read.
_MIN_LENGTHS = {LEGACY_VERSION: (7, 6), CURRENT_VERSION: (9, 8)}


def record_shape_error(data, version: int = CURRENT_VERSION) -> str | None:
    """Describe why data is not a well-formed record tuple, or None if it is."""
    section_len, meeting_len = _MIN_LENGTHS[version]
    if not isinstance(data, list) or len(data) != 5:
        return "record is not a 5-field list"
    if not isinstance(data[1], dict):
        return "sections are not a mapping"
    for section_id, section in data[1].items():
        if not isinstance(section, list) or len(section) < section_len:
            return f"section {section_id} has fewer than {section_len} fields"
        if not isinstance(section[1], list) or not isinstance(section[5], list):
            return f"section {section_id} has malformed meetings or attributes"
        if version >= 3 and not isinstance(section[8], list):
            return f"section {section_id} has malformed restrictions"
        for meeting in section[1]:
            if not isinstance(meeting, list) or len(meeting) < meeting_len:
                return f"section {section_id} has a meeting with fewer than {meeting_len} fields"
    return None
