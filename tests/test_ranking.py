from __future__ import annotations

from datetime import date

from taskrank.ranking import RankingEngine, normalize_sort_spec
from taskrank.terms import TermDictionary
from taskrank.types import ScoredTask, SortCriterion, Task

TODAY = date(2026, 10, 14)
CHAIN = ["due_date", "priority", "status"]


def _mk_scored(tid: str, score: float, **kw) -> ScoredTask:
    return ScoredTask(task=Task(id=tid, text=tid, **kw), composite_score=score)


def _rank(items: list[ScoredTask], chain=CHAIN) -> list[str]:
    return [s.task.id for s in RankingEngine(TermDictionary.build()).sort(items, chain)]


def test_score_descending_first() -> None:
    items = [_mk_scored("low", 1.0), _mk_scored("high", 5.0), _mk_scored("mid", 3.0)]
    assert _rank(items) == ["high", "mid", "low"]


def test_tie_break_chain_with_missing_values_last() -> None:
    items = [
        _mk_scored("no-due", 2.0, priority=1),
        _mk_scored("later", 2.0, due_date=date(2026, 10, 20), priority=1),
        _mk_scored("sooner-p3", 2.0, due_date=date(2026, 10, 15), priority=3),
        _mk_scored("sooner-p1", 2.0, due_date=date(2026, 10, 15), priority=1),
        _mk_scored("sooner-none", 2.0, due_date=date(2026, 10, 15)),
    ]
    assert _rank(items) == ["sooner-p1", "sooner-p3", "sooner-none", "later", "no-due"]


def test_status_uses_configured_order() -> None:
    items = [
        _mk_scored("done", 1.0, status="x"),
        _mk_scored("open", 1.0, status="open"),
        _mk_scored("doing", 1.0, status="in_progress"),
    ]
    assert _rank(items, ["status"]) == ["doing", "open", "done"]


def test_scores_within_epsilon_are_ties() -> None:
    items = [
        _mk_scored("b", 10.00001, priority=2),
        _mk_scored("a", 10.0, priority=1),
    ]
    assert _rank(items, ["priority"]) == ["a", "b"]


def test_order_is_independent_of_input_order() -> None:
    items = [
        _mk_scored("a", 3.0, due_date=date(2026, 10, 16)),
        _mk_scored("b", 3.0, due_date=date(2026, 10, 15)),
        _mk_scored("c", 4.0),
        _mk_scored("d", 3.0, due_date=date(2026, 10, 15), priority=2),
    ]
    assert _rank(items) == _rank(list(reversed(items)))


def test_full_ties_keep_input_order() -> None:
    items = [_mk_scored(t, 1.0) for t in "xyz"]
    assert _rank(items) == ["x", "y", "z"]


def test_normalize_sort_spec() -> None:
    out = normalize_sort_spec(["relevance", "Priority", "bogus", "priority", "due"])
    assert out == [SortCriterion.PRIORITY, SortCriterion.DUE_DATE]
    assert normalize_sort_spec([]) == []
