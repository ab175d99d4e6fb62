from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from taskrank.dates import matches_due_token
from taskrank.source import TaskPredicate
from taskrank.terms import TermDictionary
from taskrank.types import FilterPass, FilterSpec, Task

logger = logging.getLogger(__name__)

# Cheap, selective property predicates run before keyword matching.
PASS_ORDER = ("priority", "status", "due_date", "folder", "tags", "keywords")
PUSHDOWN_DIMENSIONS = frozenset({"priority", "status", "due_date"})


@dataclass
class FilterOutcome:
    tasks: list[Task]
    passes: list[FilterPass] = field(default_factory=list)

    def eliminated_by(self) -> FilterPass | None:
        """The pass that took the candidate count to zero."""
        for p in self.passes:
            if p.before > 0 and p.after == 0:
                return p
        return None


def _norm_path(p: str) -> str:
    return "/".join(s for s in (p or "").strip().lower().replace("\\", "/").split("/") if s)


def _norm_tag(t: str) -> str:
    return (t or "").strip().lstrip("#").lower()


class FilterEngine:
    """Strict conjunction of FilterSpec dimensions over a task collection."""

    def __init__(self, dictionary: TermDictionary, week_start: int = 0):
        self.dictionary = dictionary
        self.week_start = week_start

    def predicates(self, spec: FilterSpec, today: date) -> list[tuple[str, TaskPredicate]]:
        preds: dict[str, TaskPredicate] = {}

        if spec.priority is not None:
            if spec.priority == "any":
                preds["priority"] = lambda t: t.priority is not None
            elif spec.priority == "none":
                preds["priority"] = lambda t: t.priority is None
            else:
                levels = frozenset(spec.priority)
                preds["priority"] = lambda t: t.priority in levels

        if spec.status:
            wanted = frozenset(spec.status)
            preds["status"] = lambda t: self.dictionary.status_category(t.status) in wanted

        if spec.due_date:
            token = spec.due_date
            preds["due_date"] = lambda t: matches_due_token(
                t.due_date, token, today, self.week_start
            )
        elif spec.due_date_range is not None:
            rng = spec.due_date_range
            preds["due_date"] = lambda t: t.due_date is not None and rng.contains(t.due_date)

        if spec.folder:
            q = _norm_path(spec.folder)

            def in_folder(t: Task) -> bool:
                f = _norm_path(t.folder)
                return f == q or f.startswith(q + "/") or f"/{q}/" in f"/{f}/"

            preds["folder"] = in_folder

        if spec.tags:
            wanted_tags = frozenset(_norm_tag(x) for x in spec.tags)

            def has_tag(t: Task) -> bool:
                for tag in t.tags:
                    n = _norm_tag(tag)
                    if n in wanted_tags or any(n.startswith(w + "/") for w in wanted_tags):
                        return True
                return False

            preds["tags"] = has_tag

        if spec.keywords:
            kws = tuple(k.lower() for k in spec.keywords if k)
            preds["keywords"] = lambda t: any(k in t.text.lower() for k in kws)

        return [(name, preds[name]) for name in PASS_ORDER if name in preds]

    def property_predicate(self, spec: FilterSpec, today: date) -> TaskPredicate | None:
        """Combined priority/status/date predicate for pushdown to the task source."""
        parts = [fn for name, fn in self.predicates(spec, today) if name in PUSHDOWN_DIMENSIONS]
        if not parts:
            return None
        return lambda t: all(fn(t) for fn in parts)

    def apply(
        self,
        tasks: Iterable[Task],
        spec: FilterSpec,
        *,
        today: date,
        skip: Iterable[str] = (),
    ) -> FilterOutcome:
        candidates = list(tasks)
        if spec.is_vague and not spec.property_dimensions:
            logger.info("filter: vague query, no property filters; kept %d", len(candidates))
            return FilterOutcome(tasks=candidates)

        skipped = set(skip)
        passes: list[FilterPass] = []
        for name, pred in self.predicates(spec, today):
            before = len(candidates)
            if name in skipped:
                passes.append(FilterPass(name, before, before, pushed_down=True))
                continue
            candidates = [t for t in candidates if pred(t)]
            logger.info("filter pass %s: %d -> %d", name, before, len(candidates))
            passes.append(FilterPass(name, before, len(candidates)))
        return FilterOutcome(tasks=candidates, passes=passes)
