"""
Named structures for scraped catalog data.

These are what the fetch client produces and what the decoder rebuilds.
The positional tuple form only exists inside dataset/encoder.py,
dataset/decoder.py and the files they read and write.
"""

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ARRANGED = "ARRANGED"
TBA = "TBA"

_CANONICAL_PERIOD = re.compile(r"^(\d{4}) - (\d{4})$")


def minutes_to_hhmm(minutes: int) -> str:
    """720 → "1200", 485 → "0805"."""
    hours, mins = divmod(minutes, 60)
    return f"{hours * 100 + mins:04d}"


def hhmm_to_minutes(hhmm: str) -> int:
    value = int(hhmm)
    return (value // 100) * 60 + value % 100


class Period(BaseModel):
    """A meeting time: a start/end pair, 'arranged', or unknown (TBA)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["timed", "arranged", "tba"] = "tba"
    start: int | None = None   # minutes from midnight
    end: int | None = None

    @classmethod
    def timed(cls, start: int, end: int) -> "Period":
        return cls(kind="timed", start=start, end=end)

    @classmethod
    def arranged(cls) -> "Period":
        return cls(kind="arranged")

    @classmethod
    def tba(cls) -> "Period":
        return cls(kind="tba")

    def canonical(self) -> str:
        """Dedup key and stored table value: "0800 - 0850", "ARRANGED" or "TBA"."""
        if self.kind == "arranged":
            return ARRANGED
        if self.kind == "timed" and self.start is not None and self.end is not None:
            return f"{minutes_to_hhmm(self.start)} - {minutes_to_hhmm(self.end)}"
        return TBA

    @classmethod
    def from_canonical(cls, value: str | None) -> "Period":
        if value == ARRANGED:
            return cls.arranged()
        match = _CANONICAL_PERIOD.match(value or "")
        if not match:
            return cls.tba()
        return cls.timed(hhmm_to_minutes(match.group(1)), hhmm_to_minutes(match.group(2)))


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    long: float


class Meeting(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: str = ""
    period: Period = Field(default_factory=Period.tba)
    room: str = ""
    location: Location | None = None
    instructors: tuple[str, ...] = ()
    date_range: str | None = None
    final_date: str | None = None
    final_time: str | None = None


class Section(BaseModel):
    model_config = ConfigDict(frozen=True)

    section_id: str
    crn: str
    title: str = ""
    credits: float = 0
    schedule_type: str | None = None
    campus: str | None = None
    attributes: tuple[str, ...] = ()
    grade_basis: str | None = None
    restrictions: tuple[str, ...] = ()
    meetings: tuple[Meeting, ...] = ()


class Record(BaseModel):
    """One fetched catalog entry, e.g. key "CS 225"."""

    model_config = ConfigDict(frozen=True)

    key: str
    title: str
    description: str | None = None
    sections: tuple[Section, ...] = ()
    prerequisites: Any = Field(default_factory=list)
    corequisites: tuple[str, ...] = ()
