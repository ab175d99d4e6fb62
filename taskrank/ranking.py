from __future__ import annotations

import logging
from collections.abc import Iterable
from functools import cmp_to_key

from taskrank.terms import TermDictionary
from taskrank.types import ScoredTask, SortCriterion

logger = logging.getLogger(__name__)


def normalize_sort_spec(raw: Iterable[str | SortCriterion]) -> list[SortCriterion]:
    """Tie-break chain in user order; relevance, unknown names and repeats dropped."""
    out: list[SortCriterion] = []
    for item in raw or []:
        if isinstance(item, SortCriterion):
            crit: SortCriterion | None = item
        else:
            name = str(item).strip().lower().replace("-", "_")
            name = {"duedate": "due_date", "due": "due_date"}.get(name, name)
            try:
                crit = SortCriterion(name)
            except ValueError:
                if name not in ("relevance", "score"):
                    logger.warning("ranking: unknown sort criterion %r ignored", item)
                crit = None
        if crit is not None and crit not in out:
            out.append(crit)
    return out


def _cmp_optional(a: object | None, b: object | None) -> int:
    # Missing values sort last.
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    return (a > b) - (a < b)  # type: ignore[operator]


class RankingEngine:
    """Composite score descending, then the user tie-break chain. Stable."""

    def __init__(self, dictionary: TermDictionary, epsilon: float = 1e-4):
        self.dictionary = dictionary
        self.epsilon = epsilon

    def _compare(self, a: ScoredTask, b: ScoredTask, chain: list[SortCriterion]) -> int:
        diff = b.composite_score - a.composite_score
        if abs(diff) > self.epsilon:
            return 1 if diff > 0 else -1
        for crit in chain:
            if crit is SortCriterion.DUE_DATE:
                r = _cmp_optional(a.task.due_date, b.task.due_date)
            elif crit is SortCriterion.PRIORITY:
                r = _cmp_optional(a.task.priority, b.task.priority)
            else:
                r = self.dictionary.status_rank(a.task.status) - self.dictionary.status_rank(
                    b.task.status
                )
            if r:
                return r
        return 0

    def sort(
        self, scored: Iterable[ScoredTask], sort_spec: Iterable[str | SortCriterion]
    ) -> list[ScoredTask]:
        chain = normalize_sort_spec(sort_spec)
        return sorted(scored, key=cmp_to_key(lambda a, b: self._compare(a, b, chain)))
