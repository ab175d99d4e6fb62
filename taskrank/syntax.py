"""Deterministic query syntax layer.

Never calls out and never raises on string input: fragments it does not
recognize are left for keyword extraction.
"""

from __future__ import annotations

import logging
import re
from datetime import date

from taskrank.dates import DATE_RE_SRC, OFFSET_RE_SRC, canonical_due_token, resolve_point
from taskrank.terms import TermDictionary, correct_typos, tokenize, unique
from taskrank.types import DateRange, PartialFilterSpec

logger = logging.getLogger(__name__)

_POINT_SRC = rf"(?:{DATE_RE_SRC}|{OFFSET_RE_SRC}|today|tomorrow|yesterday)"

_CONNECTOR_WORD_RE = re.compile(r"(?<![\w-])(AND|OR|NOT)(?![\w-])")
_CONNECTOR_SYM_RE = re.compile(r"(?<!\S)(&&|&|\|\||\||!)(?!\S)")

_PRIORITY_PREFIX_RE = re.compile(r"(?<![\w#])(?:p|prio|priority):([^\s&|]+)")
_STATUS_PREFIX_RE = re.compile(r"(?<![\w#])(?:s|status):([^\s&|]+)")
_DUE_PREFIX_RE = re.compile(r"(?<![\w#])(?:d|due|date):([^\s&|]+)")
_FOLDER_PREFIX_RE = re.compile(r"(?<![\w#])(?:folder|dir|path):(\"[^\"]+\"|\S+)")
_HASHTAG_RE = re.compile(r"(?<![\w#])#([\w][\w\-/]*)")

_BETWEEN_RE = re.compile(
    rf"\b(?:due\s+)?(?:between|from)\s+({_POINT_SRC})\s+(?:and|to|until)\s+({_POINT_SRC})(?!\w)"
)
_BEFORE_RE = re.compile(rf"\b(?:due\s+)?(?:before|until|by)[:\s]+({_POINT_SRC})(?!\w)")
_AFTER_RE = re.compile(rf"\b(?:due\s+)?(?:after|since)[:\s]+({_POINT_SRC})(?!\w)")
_IN_N_RE = re.compile(r"\b(?:due\s+)?in\s+(\d{1,3})\s+(day|week|month|year)s?\b")
_OFFSET_RE = re.compile(rf"(?<!\S)({OFFSET_RE_SRC})(?!\S)")
_DATE_RE = re.compile(rf"(?<![\w/.\-])({DATE_RE_SRC})(?![\w/\-])")

_P_SHORT_RE = re.compile(r"(?<![\w#:])p([1-4])(?![\w:])")
_PRIORITY_NUM_RE = re.compile(
    r"\b(?:priority|prio)\s+([1-4](?:(?:\s*,\s*|\s+(?:or|and)\s+|\s+)[1-4])*)(?!\w)"
)

_FOLDER_NATURAL_RE = re.compile(
    r"\b(?:in|from|under)\s+(?:the\s+)?(?:folder|directory|dir)\s+(\"[^\"]+\"|[^\s,]+)"
)
_FOLDER_CJK_RE = re.compile(r"(?:文件夹|目录)\s*[:：]?\s*([^\s，,]+)")
_TAGS_NATURAL_RE = re.compile(
    r"\b(?:tagged(?:\s+with)?|with\s+tags?|having\s+tags?)\s+"
    r"(#?[\w\-/]+(?:\s*,\s*#?[\w\-/]+)*)"
)
_TAGS_CJK_RE = re.compile(r"标签\s*[:：]?\s*([^\s，,]+)")

_PRIORITY_WORDS = {
    "1": 1, "2": 2, "3": 3, "4": 4,
    "high": 1, "highest": 1, "urgent": 1,
    "medium": 2, "normal": 2,
    "low": 3,
    "lowest": 4,
}

_UNIT = {"day": "d", "week": "w", "month": "m", "year": "y"}


class _Work:
    """Mutable working text; consumed spans are blanked so they match once."""

    def __init__(self, text: str):
        self.text = text

    def take(self, pattern: re.Pattern[str]) -> list[re.Match[str]]:
        found = list(pattern.finditer(self.text))
        if found:
            self.text = pattern.sub(lambda m: " " * len(m.group(0)), self.text)
        return found

    def blank(self, start: int, end: int) -> None:
        self.text = self.text[:start] + " " * (end - start) + self.text[end:]


def _priority_values(raw: str) -> tuple[int, ...] | str | None:
    vals = [v for v in re.split(r"[,\s]+", raw.strip().lower()) if v]
    if not vals:
        return None
    if any(v in ("all", "any") for v in vals):
        return "any"
    if any(v in ("none", "no") for v in vals):
        return "none"
    levels = sorted({_PRIORITY_WORDS[v] for v in vals if v in _PRIORITY_WORDS})
    return tuple(levels) or None


def _merge_priority(
    current: tuple[int, ...] | str | None, new: tuple[int, ...] | str | None
) -> tuple[int, ...] | str | None:
    if new is None:
        return current
    if current is None or isinstance(new, str):
        return new
    if isinstance(current, str):
        return current
    return tuple(sorted(set(current) | set(new)))


def _strip_quotes(s: str) -> str:
    return s.strip().strip('"').strip()


class SyntaxParser:
    """Extract explicit filter syntax and property terms from a query."""

    def parse(self, query: str, dictionary: TermDictionary, *, today: date) -> PartialFilterSpec:
        raw = query if isinstance(query, str) else ""
        text, typos = correct_typos(raw)

        work = _Work(text)
        connectors = [m.group(1).upper() for m in work.take(_CONNECTOR_WORD_RE)]
        connectors += [m.group(1) for m in work.take(_CONNECTOR_SYM_RE)]
        work.text = work.text.lower()

        explicit: set[str] = set()
        priority: tuple[int, ...] | str | None = None
        status: list[str] = []
        due_token: str | None = None
        due_range: DateRange | None = None
        time_context: str | None = None
        folder: str | None = None
        tags: list[str] = []

        # Prefixed tokens: p:1,2  s:open  d:today  folder:x  #tag
        for m in work.take(_PRIORITY_PREFIX_RE):
            priority = _merge_priority(priority, _priority_values(m.group(1)))
            explicit.add("priority")
        for m in work.take(_STATUS_PREFIX_RE):
            explicit.add("status")
            for v in m.group(1).split(","):
                if v.strip() in ("all", "any"):
                    continue
                key = dictionary.resolve_status(v)
                if key is not None:
                    status.append(key)
                else:
                    logger.debug("syntax: unknown status value %r", v)
        for m in work.take(_DUE_PREFIX_RE):
            tok = canonical_due_token(m.group(1))
            if tok is not None and due_token is None:
                due_token = tok
                explicit.add("due")
        for m in work.take(_FOLDER_PREFIX_RE):
            folder = folder or _strip_quotes(m.group(1))
            explicit.add("folder")
        for m in work.take(_HASHTAG_RE):
            tags.append(m.group(1))
            explicit.add("tags")

        # Ranges and relative offsets
        for m in work.take(_BETWEEN_RE):
            a, b = resolve_point(m.group(1), today), resolve_point(m.group(2), today)
            if a is not None and b is not None and due_range is None:
                due_range = DateRange(start=min(a, b), end=max(a, b))
                explicit.add("due")
        for m in work.take(_BEFORE_RE):
            end = resolve_point(m.group(1), today)
            if end is not None:
                due_range = DateRange(start=due_range.start if due_range else None, end=end)
                explicit.add("due")
        for m in work.take(_AFTER_RE):
            start = resolve_point(m.group(1), today)
            if start is not None:
                due_range = DateRange(start=start, end=due_range.end if due_range else None)
                explicit.add("due")
        if due_range and due_range.start and due_range.end and due_range.start > due_range.end:
            logger.debug("syntax: discarding empty range %s", due_range)
            due_range = None
        for m in work.take(_IN_N_RE):
            tok = canonical_due_token(f"+{int(m.group(1))}{_UNIT[m.group(2)]}")
            if tok is not None:
                due_token = due_token or tok
                explicit.add("due")
        for m in work.take(_OFFSET_RE):
            tok = canonical_due_token(m.group(1))
            if tok is not None:
                due_token = due_token or tok
                explicit.add("due")
        for m in work.take(_DATE_RE):
            tok = canonical_due_token(m.group(1))
            if tok is not None:
                due_token = due_token or tok
                explicit.add("due")

        # Priority shorthands: p1 p2, "priority 1 2"
        for m in work.take(_P_SHORT_RE):
            priority = _merge_priority(priority, (int(m.group(1)),))
            explicit.add("priority")
        for m in work.take(_PRIORITY_NUM_RE):
            priority = _merge_priority(priority, _priority_values(m.group(1)))
            explicit.add("priority")

        # Folder and tags in natural form
        for pat in (_FOLDER_NATURAL_RE, _FOLDER_CJK_RE):
            for m in work.take(pat):
                folder = folder or _strip_quotes(m.group(1))
                explicit.add("folder")
        for pat in (_TAGS_NATURAL_RE, _TAGS_CJK_RE):
            for m in work.take(pat):
                tags.extend(t.strip().lstrip("#") for t in m.group(1).split(",") if t.strip())
                explicit.add("tags")

        # Dictionary property terms
        for cm in reversed(dictionary.find_concepts(work.text, include_general=True)):
            work.blank(cm.start, cm.end)
            if not cm.value:
                continue
            if cm.dimension == "priority":
                priority = _merge_priority(priority, _priority_values(cm.value))
            elif cm.dimension == "status":
                status.append(cm.value)
            elif cm.dimension == "due":
                if cm.value in ("overdue", "future", "none"):
                    due_token = due_token or cm.value
                else:
                    # Leftmost time word wins; matches are visited right to left.
                    time_context = cm.value

        if due_range is not None:
            due_token = None
        if due_token is not None or due_range is not None:
            time_context = None

        residual = re.sub(r"\s+", " ", work.text).strip()
        drop = dictionary.stop_terms | dictionary.generic_terms
        keywords = [
            t
            for t in tokenize(residual, vocab=drop)
            if t not in drop and not dictionary.is_property_term(t) and any(c.isalnum() for c in t)
        ]

        return PartialFilterSpec(
            keywords=tuple(unique(keywords)),
            priority=priority,
            due_date=due_token,
            due_date_range=due_range,
            time_context=time_context,
            status=tuple(unique(status)) or None,
            folder=folder,
            tags=tuple(unique(tags)),
            connectors=tuple(connectors),
            corrected_typos=tuple(typos),
            explicit=frozenset(explicit),
            residual=residual,
        )
