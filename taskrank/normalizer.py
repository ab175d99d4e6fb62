from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date

from taskrank.dates import TIME_CONTEXT_TOKENS, time_context_range
from taskrank.terms import TermDictionary, dedupe_for_scoring, unique
from taskrank.types import (
    DateRange,
    FilterSpec,
    ParsedQuery,
    PartialFilterSpec,
    QueryDiagnostics,
)
from taskrank.vagueness import Vagueness

logger = logging.getLogger(__name__)


@dataclass
class NormalizedQuery:
    parsed: ParsedQuery
    spec: FilterSpec
    dictionary: TermDictionary
    notes: list[str] = field(default_factory=list)


@dataclass
class _Due:
    token: str | None = None
    range: DateRange | None = None
    time_context: str | None = None

    def __bool__(self) -> bool:
        return bool(self.token or self.range is not None or self.time_context)


def _syntax_as_parsed(syntax: PartialFilterSpec) -> ParsedQuery:
    kws = list(syntax.keywords)
    return ParsedQuery(
        core_keywords=kws,
        keywords=list(kws),
        priority=syntax.priority,
        due_date=syntax.due_date,
        due_date_range=syntax.due_date_range,
        time_context=syntax.time_context,
        status=syntax.status,
        folder=syntax.folder,
        tags=syntax.tags,
        diagnostics=QueryDiagnostics(corrected_typos=list(syntax.corrected_typos)),
    )


def _due_of(pq: ParsedQuery) -> _Due:
    return _Due(pq.due_date, pq.due_date_range, pq.time_context)


class QueryNormalizer:
    """Merge syntax and semantic extractions into one FilterSpec."""

    def __init__(self, week_start: int = 0):
        self.week_start = week_start

    def normalize(
        self,
        syntax: PartialFilterSpec,
        semantic: ParsedQuery | None,
        dictionary: TermDictionary,
        *,
        today: date,
        vagueness: Vagueness,
    ) -> NormalizedQuery:
        notes: list[str] = []
        base = _syntax_as_parsed(syntax)

        if semantic is not None:
            is_vague, confidence = semantic.is_vague, semantic.confidence
        else:
            is_vague, confidence = vagueness.is_vague, vagueness.confidence

        # Specific queries trust explicit notation; vague ones trust the
        # semantic reading.
        if semantic is None:
            primary, secondary = base, base
        elif is_vague:
            primary, secondary = semantic, base
        else:
            primary, secondary = base, semantic

        priority = primary.priority if primary.priority is not None else secondary.priority
        status = primary.status or secondary.status
        folder = primary.folder or secondary.folder
        tags = primary.tags or secondary.tags
        due = _due_of(primary) or _due_of(secondary)

        if semantic is not None:
            core = list(semantic.core_keywords)
            expansions = {c: dict(v) for c, v in semantic.expansions.items()}
            diagnostics = replace(
                semantic.diagnostics,
                corrected_typos=unique_pairs(
                    list(syntax.corrected_typos) + semantic.diagnostics.corrected_typos
                ),
                notes=list(semantic.diagnostics.notes),
            )
        else:
            core = list(base.core_keywords)
            expansions = {}
            diagnostics = base.diagnostics

        due_token, due_range = self._resolve_time(due, is_vague, today, notes)

        spec_vague = is_vague
        if is_vague:
            drop = dictionary.stop_terms | dictionary.generic_terms
            kept = [c for c in core if c.lower() not in drop]
            pruned = [c for c in core if c.lower() in drop]
            if pruned:
                notes.append(f"vague query: pruned generic terms {pruned}")
            core = kept
            expansions = {c: v for c, v in expansions.items() if c in kept}
            if core:
                spec_vague = False
                notes.append(f"vague query narrowed by content terms {core}")

        keywords = list(core)
        for per_lang in expansions.values():
            for terms in per_lang.values():
                keywords.extend(terms)
        keywords = unique(keywords)

        expanded_dictionary = dictionary.with_expansions(
            {c: [t for ts in per_lang.values() for t in ts] for c, per_lang in expansions.items()}
        )

        diagnostics.notes.extend(notes)
        parsed = ParsedQuery(
            core_keywords=core,
            keywords=keywords,
            expansions=expansions,
            priority=priority,
            due_date=due_token,
            due_date_range=due_range,
            time_context=due.time_context,
            status=status,
            folder=folder,
            tags=tuple(tags),
            is_vague=is_vague,
            confidence=confidence,
            diagnostics=diagnostics,
        )
        spec = FilterSpec(
            keywords=tuple(keywords),
            core_keywords=tuple(core),
            scoring_keywords=tuple(dedupe_for_scoring(keywords)),
            priority=priority,
            due_date=due_token,
            due_date_range=due_range,
            status=status,
            folder=folder,
            tags=tuple(tags),
            is_vague=spec_vague,
        )
        logger.debug("normalized %r -> %s", syntax.residual, spec)
        return NormalizedQuery(
            parsed=parsed, spec=spec, dictionary=expanded_dictionary, notes=notes
        )

    def _resolve_time(
        self, due: _Due, is_vague: bool, today: date, notes: list[str]
    ) -> tuple[str | None, DateRange | None]:
        if due.range is not None:
            if due.token:
                notes.append(f"due token {due.token!r} dropped in favour of range")
            return None, due.range
        if due.token:
            return due.token, None
        ctx = due.time_context
        if not ctx:
            return None, None
        if is_vague:
            resolved = time_context_range(ctx, today, self.week_start)
            if isinstance(resolved, DateRange):
                notes.append(f"time context {ctx!r} -> range {resolved.start}..{resolved.end}")
                return None, resolved
            if isinstance(resolved, str):
                return resolved, None
        else:
            token = TIME_CONTEXT_TOKENS.get(ctx)
            if token is not None:
                return token, None
        notes.append(f"unknown time context {ctx!r} ignored")
        return None, None


def unique_pairs(pairs: list[tuple[str, str]]) -> list[tuple[str, str]]:
    seen: set[tuple[str, str]] = set()
    out: list[tuple[str, str]] = []
    for p in pairs:
        key = (p[0].lower(), p[1].lower())
        if key in seen:
            continue
        seen.add(key)
        out.append((p[0], p[1]))
    return out
