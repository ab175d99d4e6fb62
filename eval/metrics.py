from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from taskrank.types import SearchResult, SearchState


@dataclass
class EvalCase:
    id: str
    query: str
    tasks: list[dict[str, Any]] = field(default_factory=list)
    today: str | None = None
    relevant: list[str] = field(default_factory=list)
    expected_order: list[str] = field(default_factory=list)
    expect_no_candidates: bool = False
    evaluation: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


def precision_at_k(ranked: list[str], relevant: set[str], k: int) -> float:
    if k <= 0:
        return 0.0
    top = ranked[:k]
    if not top:
        return 0.0
    return sum(1 for r in top if r in relevant) / len(top)


def recall(ranked: list[str], relevant: set[str]) -> float:
    if not relevant:
        return 1.0
    return len(relevant.intersection(ranked)) / len(relevant)


def first_relevant_rank(ranked: list[str], relevant: set[str]) -> int:
    """1-based rank of the first relevant id; 0 when none is returned."""
    for i, r in enumerate(ranked, start=1):
        if r in relevant:
            return i
    return 0


def exact_set_match(ranked: list[str], relevant: set[str]) -> float:
    return 1.0 if set(ranked) == relevant else 0.0


def order_match(ranked: list[str], expected: list[str]) -> float:
    """1.0 when ``expected`` appears in ``ranked`` as a subsequence, in order."""
    if not expected:
        return 1.0
    it = iter(ranked)
    return 1.0 if all(e in it for e in expected) else 0.0


def evaluate_case(case: EvalCase, result: SearchResult) -> dict[str, float]:
    """Ranking metrics for one case.

    YAML keys (flexible):
    - relevant / expected_ids
    - expected_order
    - expect_no_candidates
    - evaluation.k (precision cutoff, defaults to the relevant count)
    """

    metrics: dict[str, float] = {}
    ranked = [s.task.id for s in result.tasks]
    relevant = set(case.relevant)
    ev = case.evaluation or {}

    k = int(ev.get("k") or len(relevant) or len(ranked) or 1)
    metrics["precision_at_k"] = precision_at_k(ranked, relevant, k)
    metrics["recall"] = recall(ranked, relevant)
    metrics["first_relevant_rank"] = float(first_relevant_rank(ranked, relevant))
    metrics["exact_set"] = exact_set_match(ranked, relevant)
    if case.expected_order:
        metrics["order_match"] = order_match(ranked, case.expected_order)

    no_cand = result.state is SearchState.NO_CANDIDATES
    metrics["no_candidates"] = 1.0 if no_cand else 0.0
    if case.expect_no_candidates:
        metrics["no_candidates_match"] = 1.0 if no_cand else 0.0

    metrics["returned"] = float(len(ranked))
    metrics["latency_ms"] = float(result.diagnostics.latency_ms or 0.0)
    return metrics
