"""Weighted multi-component scoring.

Each component is active only when the query filters on it or the sort chain
names it. Inactive components add nothing to a task's composite score and
nothing to the per-query maximum used by the quality threshold.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from taskrank.terms import TermDictionary, is_cjk
from taskrank.types import (
    FilterSpec,
    QualityMath,
    ScoredTask,
    ScoringConfig,
    SortCriterion,
    StatusCategory,
    Task,
)

logger = logging.getLogger(__name__)

COMPONENTS = ("relevance", "due_date", "priority", "status")


@dataclass
class ScoringOutcome:
    scored: list[ScoredTask]
    max_score: float
    active: list[str] = field(default_factory=list)


class ScoringEngine:
    def __init__(
        self,
        config: ScoringConfig,
        dictionary: TermDictionary,
        status_categories: Iterable[StatusCategory] = (),
    ):
        self.config = config
        self.dictionary = dictionary
        self.status_scores = {c.key: float(c.score) for c in status_categories}

    # -- activation -------------------------------------------------------

    def active_components(
        self, spec: FilterSpec, sort_spec: Iterable[SortCriterion]
    ) -> list[str]:
        sort = set(sort_spec)
        active: list[str] = []
        if spec.scoring_keywords:
            active.append("relevance")
        if spec.due_date or spec.due_date_range is not None or SortCriterion.DUE_DATE in sort:
            active.append("due_date")
        if spec.priority is not None or SortCriterion.PRIORITY in sort:
            active.append("priority")
        if spec.status or SortCriterion.STATUS in sort:
            active.append("status")
        return active

    def max_score(self, active: Iterable[str]) -> float:
        c = self.config
        caps = {
            "relevance": (c.relevance_core_weight + 1.0) * c.relevance_coefficient,
            "due_date": max(
                c.due_overdue_score,
                c.due_today_score,
                c.due_within_near_score,
                c.due_within_far_score,
                c.due_later_score,
                c.due_none_score,
            )
            * c.due_date_coefficient,
            "priority": max([*c.priority_scores.values(), c.priority_none_score])
            * c.priority_coefficient,
            "status": max(self.status_scores.values(), default=0.5) * c.status_coefficient,
        }
        return sum(caps[a] for a in active)

    # -- components -------------------------------------------------------

    def _match_strength(self, keyword: str, text: str) -> float:
        k = keyword.lower()
        if not k or k not in text:
            return 0.0
        c = self.config
        if is_cjk(k):
            return c.exact_match_strength
        esc = re.escape(k)
        if re.search(rf"(?<!\w){esc}(?!\w)", text):
            return c.exact_match_strength
        if re.search(rf"(?<!\w){esc}", text):
            return c.prefix_match_strength
        return c.substring_match_strength

    def relevance(self, task: Task, spec: FilterSpec) -> float:
        keywords = spec.scoring_keywords
        if not keywords:
            return 0.0
        text = task.text.lower()
        cores = {k.lower(): k for k in spec.core_keywords}
        n_core = len(cores) or len(keywords)

        total = 0.0
        matched_cores: set[str] = set()
        for kw in keywords:
            s = self._match_strength(kw, text)
            if s <= 0.0:
                continue
            total += s
            core = cores.get(kw.lower()) or self.dictionary.core_for(kw) or kw
            matched_cores.add(core.lower())

        if cores:
            core_ratio = len(matched_cores & set(cores)) / n_core
        else:
            core_ratio = len(matched_cores) / n_core
        hit_ratio = min(1.0, total / n_core)
        return core_ratio * self.config.relevance_core_weight + hit_ratio

    def due_date_score(self, due: date | None, today: date) -> float:
        c = self.config
        if due is None:
            return c.due_none_score
        days = (due - today).days
        if days < 0:
            return c.due_overdue_score
        if days == 0:
            return c.due_today_score
        if days <= c.due_near_days:
            return c.due_within_near_score
        if days <= c.due_far_days:
            return c.due_within_far_score
        return c.due_later_score

    def priority_score(self, priority: int | None) -> float:
        if priority is None:
            return self.config.priority_none_score
        return float(self.config.priority_scores.get(priority, self.config.priority_none_score))

    def status_score(self, status: str) -> float:
        key = self.dictionary.status_category(status)
        return self.status_scores.get(key, self.status_scores.get("other", 0.5))

    # -- scoring ----------------------------------------------------------

    def score(
        self,
        tasks: Iterable[Task],
        spec: FilterSpec,
        sort_spec: Iterable[SortCriterion],
        *,
        today: date,
    ) -> ScoringOutcome:
        c = self.config
        active = self.active_components(spec, sort_spec)
        scored: list[ScoredTask] = []
        for t in tasks:
            st = ScoredTask(task=t)
            if "relevance" in active:
                st.relevance_score = self.relevance(t, spec)
            if "due_date" in active:
                st.due_date_score = self.due_date_score(t.due_date, today)
            if "priority" in active:
                st.priority_score = self.priority_score(t.priority)
            if "status" in active:
                st.status_score = self.status_score(t.status)
            st.composite_score = (
                st.relevance_score * c.relevance_coefficient
                + st.due_date_score * c.due_date_coefficient
                + st.priority_score * c.priority_coefficient
                + st.status_score * c.status_coefficient
            )
            scored.append(st)
        max_score = self.max_score(active)
        logger.debug("scoring: active=%s max=%.3f n=%d", active, max_score, len(scored))
        return ScoringOutcome(scored=scored, max_score=max_score, active=active)

    def apply_quality(
        self,
        outcome: ScoringOutcome,
        strength: float,
        minimum_relevance: float = 0.0,
    ) -> tuple[list[ScoredTask], QualityMath]:
        """Drop tasks below ``strength`` x max score or below the relevance floor."""
        math = QualityMath(
            active_components=list(outcome.active),
            max_score=outcome.max_score,
            strength=strength,
            threshold=strength * outcome.max_score if strength > 0 else 0.0,
            minimum_relevance=minimum_relevance,
            top_score=max((s.composite_score for s in outcome.scored), default=0.0),
        )
        kept = outcome.scored
        if strength > 0:
            before = len(kept)
            kept = [s for s in kept if s.composite_score >= math.threshold]
            math.removed_by_threshold = before - len(kept)
        if minimum_relevance > 0 and "relevance" in outcome.active:
            before = len(kept)
            kept = [s for s in kept if s.relevance_score >= minimum_relevance]
            math.removed_by_relevance = before - len(kept)
        if math.removed_by_threshold or math.removed_by_relevance:
            logger.info(
                "quality filter: threshold %.2f (%.0f%% of %.2f) removed %d, relevance floor "
                "%.2f removed %d",
                math.threshold,
                strength * 100,
                outcome.max_score,
                math.removed_by_threshold,
                minimum_relevance,
                math.removed_by_relevance,
            )
        return kept, math
