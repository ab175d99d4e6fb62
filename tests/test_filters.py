from __future__ import annotations

from datetime import date, timedelta

import pytest

from taskrank.filters import FilterEngine
from taskrank.terms import TermDictionary
from taskrank.types import DateRange, FilterSpec, FilterSpecError, Task

TODAY = date(2026, 10, 14)


def _mk_task(tid: str, text: str = "task", **kw) -> Task:
    return Task(id=tid, text=text, **kw)


def _mk_tasks() -> list[Task]:
    return [
        _mk_task("a", "Fix payment gateway", priority=1, due_date=TODAY - timedelta(days=2),
                 status="in_progress", folder="work/billing", tags=("bug",)),
        _mk_task("b", "Write quarterly report", priority=2, due_date=TODAY, folder="work"),
        _mk_task("c", "Renew passport", priority=3, due_date=TODAY + timedelta(days=6),
                 folder="personal"),
        _mk_task("d", "Payment reminder email", priority=None, status="x", folder="work"),
        _mk_task("e", "修复登录错误", priority=1, due_date=TODAY + timedelta(days=1),
                 tags=("bug/ui",)),
    ]


def _engine() -> FilterEngine:
    return FilterEngine(TermDictionary.build())


def _ids(tasks: list[Task]) -> list[str]:
    return [t.id for t in tasks]


def test_vague_without_properties_returns_everything() -> None:
    out = _engine().apply(_mk_tasks(), FilterSpec(is_vague=True), today=TODAY)
    assert _ids(out.tasks) == ["a", "b", "c", "d", "e"]
    assert out.passes == []


def test_vague_with_date_range_applies_only_the_range() -> None:
    spec = FilterSpec(is_vague=True, due_date_range=DateRange(end=TODAY))
    out = _engine().apply(_mk_tasks(), spec, today=TODAY)
    assert _ids(out.tasks) == ["a", "b"]


def test_keywords_are_case_insensitive_or_substrings() -> None:
    spec = FilterSpec(keywords=("PAYMENT", "登录"), core_keywords=("PAYMENT",))
    out = _engine().apply(_mk_tasks(), spec, today=TODAY)
    assert _ids(out.tasks) == ["a", "d", "e"]


def test_properties_run_before_keywords() -> None:
    spec = FilterSpec(keywords=("payment",), priority=(1, 2), status=("in_progress",))
    out = _engine().apply(_mk_tasks(), spec, today=TODAY)
    assert [p.name for p in out.passes] == ["priority", "status", "keywords"]
    assert [(p.before, p.after) for p in out.passes] == [(5, 3), (3, 1), (1, 1)]
    assert _ids(out.tasks) == ["a"]


@pytest.mark.parametrize(
    "extra",
    [
        {"status": ("open",)},
        {"due_date": "week"},
        {"folder": "work"},
        {"tags": ("bug",)},
        {"keywords": ("report",)},
    ],
)
def test_adding_a_dimension_never_grows_the_result(extra: dict) -> None:
    base = FilterSpec(priority=(1, 2, 3))
    narrowed = FilterSpec(priority=(1, 2, 3), **extra)
    e = _engine()
    wide = set(_ids(e.apply(_mk_tasks(), base, today=TODAY).tasks))
    narrow = set(_ids(e.apply(_mk_tasks(), narrowed, today=TODAY).tasks))
    assert narrow <= wide


def test_status_uses_categories_and_symbols() -> None:
    out = _engine().apply(_mk_tasks(), FilterSpec(status=("completed",)), today=TODAY)
    assert _ids(out.tasks) == ["d"]


def test_priority_any_and_none() -> None:
    e = _engine()
    assert _ids(e.apply(_mk_tasks(), FilterSpec(priority="none"), today=TODAY).tasks) == ["d"]
    assert "d" not in _ids(e.apply(_mk_tasks(), FilterSpec(priority="any"), today=TODAY).tasks)


def test_folder_and_tag_hierarchies() -> None:
    e = _engine()
    assert _ids(e.apply(_mk_tasks(), FilterSpec(folder="work"), today=TODAY).tasks) == [
        "a", "b", "d"
    ]
    assert _ids(e.apply(_mk_tasks(), FilterSpec(tags=("#bug",)), today=TODAY).tasks) == ["a", "e"]


def test_pushed_down_passes_are_recorded_not_rerun() -> None:
    spec = FilterSpec(priority=(1,), keywords=("fix",))
    e = _engine()
    pred = e.property_predicate(spec, TODAY)
    assert pred is not None
    loaded = [t for t in _mk_tasks() if pred(t)]
    out = e.apply(loaded, spec, today=TODAY, skip={"priority"})
    assert out.passes[0].pushed_down
    assert out.passes[0].before == out.passes[0].after == 2
    assert _ids(out.tasks) == ["a"]


def test_no_property_predicate_for_keyword_only_spec() -> None:
    assert _engine().property_predicate(FilterSpec(keywords=("x",)), TODAY) is None


def test_eliminated_by_names_the_emptying_pass() -> None:
    spec = FilterSpec(priority=(1,), keywords=("nothing-matches",))
    out = _engine().apply(_mk_tasks(), spec, today=TODAY)
    assert out.tasks == []
    p = out.eliminated_by()
    assert p is not None and p.name == "keywords" and p.before == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"due_date": "today", "due_date_range": DateRange(end=TODAY)},
        {"is_vague": True, "keywords": ("x",)},
        {"priority": (5,)},
        {"priority": "high"},
        {"due_date_range": DateRange()},
        {"due_date_range": DateRange(TODAY, TODAY - timedelta(days=1))},
        {"core_keywords": ("a", "b"), "keywords": ("a",)},
    ],
)
def test_inconsistent_filter_specs_are_rejected(kwargs: dict) -> None:
    with pytest.raises(FilterSpecError):
        FilterSpec(**kwargs)
