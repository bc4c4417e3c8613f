"""
Term (catalog partition) codes and names.

    Term(year="2025", season="fall").code  → "202508"
    Term(year="2026", season="winter").name → "Winter 2025-2026"
"""

import re
from dataclasses import dataclass
from datetime import date

SEASON_CODES = {"spring": "02", "summer": "05", "fall": "08", "winter": "12"}

# Within one year, later seasons sort higher
SEASON_ORDER = {"winter": 0, "spring": 1, "summer": 2, "fall": 3}

# Calendar cycle used when guessing terms without the network.
# Winter of year Y runs December Y-1 to January Y, before spring Y.
_CYCLE = ["winter", "spring", "summer", "fall"]

_TERM_PATTERN = re.compile(r"^\s*(?:(\d{4})\s*[/\s-]\s*([a-z]+)|([a-z]+)\s*[/\s-]\s*(\d{4}))\s*$", re.I)


@dataclass(frozen=True)
class Term:
    year: str
    season: str

    def __post_init__(self):
        season = self.season.lower()
        if season not in SEASON_CODES:
            raise ValueError(f"Invalid term: {self.season}")
        object.__setattr__(self, "season", season)

    @property
    def code(self) -> str:
        return f"{self.year}{SEASON_CODES[self.season]}"

    @property
    def name(self) -> str:
        if self.season == "winter":
            return f"Winter {int(self.year) - 1}-{self.year}"
        return f"{self.season.capitalize()} {self.year}"

    @property
    def order(self) -> int:
        return int(self.year) * 10 + SEASON_ORDER[self.season]

    @classmethod
    def parse(cls, text: str) -> "Term":
        """Accept "2025/fall", "2025 fall", "fall 2025" or "Fall-2025"."""
        match = _TERM_PATTERN.match(text)
        if not match:
            raise ValueError(f"Cannot parse term: {text!r}")
        year = match.group(1) or match.group(4)
        season = match.group(2) or match.group(3)
        return cls(year=year, season=season)


def parse_terms(text: str) -> list[Term]:
    """Parse a comma-separated TERMS setting."""
    return [Term.parse(part) for part in text.split(",") if part.strip()]


def latest_terms(available: list[Term], count: int) -> list[Term]:
    """The `count` most recent terms, newest first."""
    unique = {t.code: t for t in available}.values()
    return sorted(unique, key=lambda t: t.order, reverse=True)[:count]


def current_season(today: date) -> str:
    if today.month <= 1:
        return "winter"
    if today.month <= 5:
        return "spring"
    if today.month <= 8:
        return "summer"
    return "fall"


def guess_terms(count: int, today: date | None = None) -> list[Term]:
    """Walk back from today's season through the calendar cycle, newest first."""
    today = today or date.today()
    season = current_season(today)
    index = _CYCLE.index(season)
    year = today.year
    terms = []
    for _ in range(count):
        terms.append(Term(year=str(year), season=_CYCLE[index]))
        if _CYCLE[index] == "winter":
            year -= 1
        index = (index - 1) % len(_CYCLE)
    return terms
