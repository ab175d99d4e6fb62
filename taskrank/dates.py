"""Deterministic date handling: formats, named dates, offsets and windows.

Due-date tokens understood by the filter engine:

``any`` ``none`` ``today`` ``tomorrow`` ``yesterday`` ``overdue`` ``future``
``week`` ``last-week`` ``next-week`` ``month`` ``last-month`` ``next-month``
``year`` ``last-year`` ``next-year``, an ISO date, or an offset such as ``+3d``.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta

from taskrank.types import DateRange

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"

# Order matters: the first matching pattern decides the format.
DATE_PATTERNS: list[tuple[str, list[str]]] = [
    (r"\d{4}-\d{1,2}-\d{1,2}", ["%Y-%m-%d"]),
    (r"\d{4}/\d{1,2}/\d{1,2}", ["%Y/%m/%d"]),
    (r"\d{1,2}/\d{1,2}/\d{4}", ["%m/%d/%Y"]),
    (r"\d{1,2}\.\d{1,2}\.\d{4}", ["%d.%m.%Y"]),
    (rf"{_MONTHS}\s+\d{{1,2}},?\s+\d{{4}}", ["%b %d %Y", "%B %d %Y"]),
    (rf"\d{{1,2}}\s+{_MONTHS}\s+\d{{4}}", ["%d %b %Y", "%d %B %Y"]),
]

DATE_RE_SRC = "(?:" + "|".join(p for p, _ in DATE_PATTERNS) + ")"
OFFSET_RE_SRC = r"[+-]\d{1,4}[dwmy]"

_OFFSET_RE = re.compile(r"^([+-]?)(\d{1,4})([dwmy])$")

_TOKEN_ALIASES = {
    "all": "any",
    "has": "any",
    "no": "none",
    "nodate": "none",
    "no-date": "none",
    "od": "overdue",
    "over-due": "overdue",
    "past": "overdue",
    "this-week": "week",
    "thisweek": "week",
    "nextweek": "next-week",
    "lastweek": "last-week",
    "this-month": "month",
    "thismonth": "month",
    "nextmonth": "next-month",
    "lastmonth": "last-month",
    "this-year": "year",
    "thisyear": "year",
    "nextyear": "next-year",
    "lastyear": "last-year",
    "upcoming": "future",
    "later": "future",
}

NAMED_TOKENS = frozenset(
    {
        "any", "none", "today", "tomorrow", "yesterday", "overdue", "future",
        "week", "last-week", "next-week",
        "month", "last-month", "next-month",
        "year", "last-year", "next-year",
    }
)

# Time contexts emitted by the parsers, mapped to the exact token used when
# the query is specific.
TIME_CONTEXT_TOKENS = {
    "today": "today",
    "tomorrow": "tomorrow",
    "yesterday": "yesterday",
    "this_week": "week",
    "next_week": "next-week",
    "last_week": "last-week",
    "this_month": "month",
    "next_month": "next-month",
    "last_month": "last-month",
    "this_year": "year",
    "next_year": "next-year",
    "last_year": "last-year",
}


def parse_date(text: str) -> date | None:
    """Parse an explicit date in one of the supported formats."""
    s = re.sub(r"\s+", " ", (text or "").strip().lower().replace(",", ""))
    if not s:
        return None
    s = re.sub(r"\b(sept)\b", "sep", s)
    if not s[0].isdigit():
        s = s.replace(".", "")
    for pattern, formats in DATE_PATTERNS:
        if not re.fullmatch(pattern, s):
            continue
        for fmt in formats:
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
        return None
    return None


def add_months(d: date, months: int) -> date:
    y, m = divmod(d.month - 1 + months, 12)
    year = d.year + y
    month = m + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_offset(token: str, today: date) -> date | None:
    """Resolve ``+Nd`` / ``-Nw`` / ``Nm`` / ``+Ny`` relative to today."""
    m = _OFFSET_RE.match((token or "").strip().lower())
    if not m:
        return None
    sign = -1 if m.group(1) == "-" else 1
    n = sign * int(m.group(2))
    unit = m.group(3)
    try:
        if unit == "d":
            return today + timedelta(days=n)
        if unit == "w":
            return today + timedelta(weeks=n)
        if unit == "m":
            return add_months(today, n)
        return add_months(today, 12 * n)
    except (ValueError, OverflowError):
        # outside the representable calendar
        return None


def resolve_point(text: str, today: date) -> date | None:
    """A single reference date: explicit date, offset, or today/tomorrow/yesterday."""
    s = (text or "").strip().lower()
    if s == "today":
        return today
    if s == "tomorrow":
        return today + timedelta(days=1)
    if s == "yesterday":
        return today - timedelta(days=1)
    return parse_offset(s, today) or parse_date(s)


def week_bounds(d: date, week_start: int = 0) -> tuple[date, date]:
    start = d - timedelta(days=(d.weekday() - week_start) % 7)
    return start, start + timedelta(days=6)


def month_bounds(d: date) -> tuple[date, date]:
    start = d.replace(day=1)
    return start, d.replace(day=calendar.monthrange(d.year, d.month)[1])


def year_bounds(d: date) -> tuple[date, date]:
    return date(d.year, 1, 1), date(d.year, 12, 31)


def canonical_due_token(raw: str) -> str | None:
    """Normalize a ``due:`` value to a filter token, or None when unknown."""
    s = (raw or "").strip().lower().replace("_", "-")
    if not s:
        return None
    s = _TOKEN_ALIASES.get(s, s)
    if s in NAMED_TOKENS:
        return s
    if _OFFSET_RE.match(s):
        tok = s if s[0] in "+-" else f"+{s}"
        return tok if parse_offset(tok, date.today()) is not None else None
    d = parse_date(s)
    return d.isoformat() if d else None


def token_window(token: str, today: date, week_start: int = 0) -> DateRange | None:
    """Calendar window for a windowed due token, or None for other tokens."""
    if token == "week":
        return DateRange(*week_bounds(today, week_start))
    if token == "last-week":
        return DateRange(*week_bounds(today - timedelta(days=7), week_start))
    if token == "next-week":
        return DateRange(*week_bounds(today + timedelta(days=7), week_start))
    if token == "month":
        return DateRange(*month_bounds(today))
    if token == "last-month":
        return DateRange(*month_bounds(add_months(today.replace(day=1), -1)))
    if token == "next-month":
        return DateRange(*month_bounds(add_months(today.replace(day=1), 1)))
    if token == "year":
        return DateRange(*year_bounds(today))
    if token == "last-year":
        return DateRange(*year_bounds(date(today.year - 1, 1, 1)))
    if token == "next-year":
        return DateRange(*year_bounds(date(today.year + 1, 1, 1)))
    return None


def matches_due_token(due: date | None, token: str, today: date, week_start: int = 0) -> bool:
    if token == "any":
        return due is not None
    if token == "none":
        return due is None
    if due is None:
        return False
    if token == "overdue":
        return due < today
    if token == "future":
        return due > today
    window = token_window(token, today, week_start)
    if window is not None:
        return window.contains(due)
    point = resolve_point(token, today)
    return point is not None and due == point


def time_context_range(context: str, today: date, week_start: int = 0) -> DateRange | str | None:
    """Inclusive range for a time concept in a vague query.

    Forward-looking concepts end at the reference point and keep every earlier
    date (overdue included). Backward-looking ones keep their own window;
    ``yesterday`` stays an exact day and is returned as a token.
    """
    if context == "today":
        return DateRange(end=today)
    if context == "tomorrow":
        return DateRange(end=today + timedelta(days=1))
    if context == "yesterday":
        return "yesterday"
    if context == "this_week":
        return DateRange(end=week_bounds(today, week_start)[1])
    if context == "next_week":
        return DateRange(end=week_bounds(today + timedelta(days=7), week_start)[1])
    if context == "last_week":
        return token_window("last-week", today, week_start)
    if context == "this_month":
        return DateRange(end=month_bounds(today)[1])
    if context == "next_month":
        return DateRange(end=month_bounds(add_months(today.replace(day=1), 1))[1])
    if context == "last_month":
        return token_window("last-month", today, week_start)
    if context == "this_year":
        return DateRange(end=date(today.year, 12, 31))
    if context == "next_year":
        return DateRange(end=date(today.year + 1, 12, 31))
    if context == "last_year":
        return token_window("last-year", today, week_start)
    return None
