"""Search mini-language for listing notes.

Free text may embed structured filters::

    tag:work,ideas after:2024-01-01 before:2024-03-31 launch plan

- ``tag:a,b`` — the note must carry *every* listed tag (case-insensitive).
- ``after:D`` — created on or after the start of day D.
- ``before:D`` — created on or before day D (the whole day is included).
- ``during:D`` — created on day D.

Dates are ``YYYY-MM-DD`` in UTC; malformed dates are ignored. Whatever text
remains is matched as a case-insensitive substring of the note content.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta

from memoria.notes.models import to_db_time

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\b(tag|before|after|during):(\S*)", re.IGNORECASE)


@dataclass
class SearchQuery:
    """Parsed form of a search string."""

    text: str = ""
    tags: list[str] = field(default_factory=list)
    after: date | None = None
    before: date | None = None
    during: date | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.tags or self.after or self.before or self.during)

    def created_bounds(self) -> tuple[str | None, str | None]:
        """Return ``(lower_inclusive, upper_exclusive)`` as stored timestamps."""
        lower: datetime | None = None
        upper: datetime | None = None

        if self.after:
            lower = _start_of(self.after)
        if self.during:
            day_start = _start_of(self.during)
            lower = max(lower, day_start) if lower else day_start
            upper = day_start + timedelta(days=1)
        if self.before:
            day_end = _start_of(self.before) + timedelta(days=1)
            upper = min(upper, day_end) if upper else day_end

        return (
            to_db_time(lower) if lower else None,
            to_db_time(upper) if upper else None,
        )

    def matches_all_tags(self, tag_names: list[str]) -> bool:
        have = {name.casefold() for name in tag_names}
        return all(tag.casefold() in have for tag in self.tags)


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.debug("Ignoring malformed search date: %r", value)
        return None


def parse_search(text: str | None) -> SearchQuery:
    """Split a raw search string into structured filters and free text."""
    query = SearchQuery()
    if not text:
        return query

    for match in _TOKEN.finditer(text):
        key, value = match.group(1).lower(), match.group(2)
        if key == "tag":
            for name in value.split(","):
                name = name.strip()
                if name and name.casefold() not in {t.casefold() for t in query.tags}:
                    query.tags.append(name)
        elif key == "after":
            query.after = _parse_date(value)
        elif key == "before":
            query.before = _parse_date(value)
        elif key == "during":
            query.during = _parse_date(value)

    remainder = _TOKEN.sub(" ", text)
    query.text = " ".join(remainder.split())
    return query
