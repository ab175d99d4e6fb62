from __future__ import annotations

import asyncio
import json
from datetime import date
from types import SimpleNamespace
from typing import Any

import pytest

from taskrank.pipeline import SearchPipeline, SearchSession, search_result_to_dict
from taskrank.semantic import SemanticParser
from taskrank.source import InMemoryTaskSource
from taskrank.types import (
    ModelConfig,
    ParserPath,
    SearchConfig,
    SearchResult,
    SearchState,
    Task,
)

TODAY = date(2026, 10, 14)  # Wednesday; week is Oct 12..18


def _mk_tasks() -> list[Task]:
    return [
        Task("t1", "Fix payment gateway timeout", 1, date(2026, 10, 12), "in_progress"),
        Task("t2", "Write quarterly report", 2, date(2026, 10, 14)),
        Task("t3", "Renew passport", 3, date(2026, 10, 16)),
        Task("t4", "Review pull request", 2, date(2026, 10, 20)),
        Task("t5", "Plan team offsite", 1),
        Task("t6", "修复登录页面的错误", 1, date(2026, 10, 13)),
        Task("t7", "Book dentist appointment", None, date(2026, 10, 14)),
        Task("t8", "Update dependencies", 3, date(2026, 10, 1), "x"),
        Task("t9", "Call the bank", 2, date(2026, 10, 18)),
        Task("t10", "Cancel gym membership", 4, date(2026, 10, 30), "cancelled"),
    ]


class _StubCompletions:
    def __init__(self, content: str = "", delay: float = 0.0):
        self.content = content
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        msg = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)])


def _mk_semantic(completions: _StubCompletions) -> SemanticParser:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return SemanticParser(ModelConfig(name="stub"), client=client)


def _mk_pipeline(
    tasks: list[Task] | None = None,
    semantic: SemanticParser | None = None,
    pushdown: bool = True,
    **cfg: Any,
) -> SearchPipeline:
    source = InMemoryTaskSource(tasks if tasks is not None else _mk_tasks(), pushdown)
    return SearchPipeline(SearchConfig(**cfg), source, semantic)


def _ids(res: SearchResult) -> list[str]:
    return [s.task.id for s in res.tasks]


@pytest.mark.asyncio
async def test_priority_list_due_this_week() -> None:
    res = await _mk_pipeline().run("priority 1 2 tasks due this week", today=TODAY)
    # overdue P1 in progress, overdue P1 open, due today, due later this week
    assert _ids(res) == ["t1", "t6", "t2", "t9"]
    assert res.state is SearchState.DONE
    assert res.diagnostics.filter_spec is not None
    assert res.diagnostics.filter_spec.keywords == ()


@pytest.mark.asyncio
async def test_same_result_with_and_without_pushdown() -> None:
    q = "priority 1 2 tasks due this week"
    pushed = await _mk_pipeline().run(q, today=TODAY)
    plain = await _mk_pipeline(pushdown=False).run(q, today=TODAY)
    assert _ids(pushed) == _ids(plain)
    assert pushed.diagnostics.loaded_tasks == 4
    assert plain.diagnostics.loaded_tasks == 10
    assert all(p.pushed_down for p in pushed.diagnostics.filter_passes)
    assert not any(p.pushed_down for p in plain.diagnostics.filter_passes)


@pytest.mark.asyncio
async def test_overdue_skips_keywords_and_model() -> None:
    comp = _StubCompletions("{}")
    res = await _mk_pipeline(semantic=_mk_semantic(comp)).run("overdue", today=TODAY)
    assert set(_ids(res)) == {"t1", "t6", "t8"}
    assert "keywords" not in [p.name for p in res.diagnostics.filter_passes]
    assert res.diagnostics.parser_path is ParserPath.SYNTAX
    assert comp.calls == []


@pytest.mark.asyncio
async def test_no_matches_yields_diagnosis() -> None:
    tasks = [t for t in _mk_tasks() if t.id in ("t2", "t3", "t4")]
    res = await _mk_pipeline(tasks).run("fix payment bug", today=TODAY)
    assert res.tasks == []
    assert res.state is SearchState.NO_CANDIDATES
    nc = res.diagnostics.no_candidates
    assert nc is not None
    assert nc.stage == "filter"
    assert nc.eliminated_by == "keywords"
    assert nc.before == 3
    assert nc.suggestions
    assert set(nc.weak_keywords) == {"fix", "payment", "bug"}


@pytest.mark.asyncio
async def test_semantic_timeout_falls_back_to_syntax() -> None:
    comp = _StubCompletions("{}", delay=1.0)
    pipe = _mk_pipeline(semantic=_mk_semantic(comp), semantic_timeout_s=0.01)
    res = await pipe.run("payment", today=TODAY)
    d = res.diagnostics
    assert _ids(res) == ["t1"]
    assert d.parser_path is ParserPath.SYNTAX_FALLBACK
    assert d.fallback_reason is not None and d.fallback_reason.startswith("timeout")
    assert d.fallback_candidates == 1
    assert SearchState.SEMANTIC_FAILED in d.states
    assert d.states[-1] is SearchState.DONE


@pytest.mark.asyncio
async def test_vague_today_includes_overdue_sorted_by_urgency() -> None:
    keep = {"t1", "t2", "t3", "t5", "t6", "t7", "t8"}
    tasks = [t for t in _mk_tasks() if t.id in keep]
    res = await _mk_pipeline(tasks).run("what should I do today", today=TODAY)
    ids = _ids(res)
    assert set(ids) == {"t1", "t6", "t8", "t2", "t7"}
    overdue = [ids.index(t) for t in ("t1", "t6", "t8")]
    due_today = [ids.index(t) for t in ("t2", "t7")]
    assert max(overdue) < min(due_today)
    assert res.diagnostics.is_vague


@pytest.mark.asyncio
async def test_semantic_expansion_matches_other_language() -> None:
    content = json.dumps(
        {
            "coreKeywords": ["fix", "login"],
            "expandedKeywords": {
                "fix": {"English": ["repair"], "中文": ["修复"]},
                "login": {"English": ["sign in"], "中文": ["登录"]},
            },
            "isVague": False,
            "confidence": 0.9,
        },
        ensure_ascii=False,
    )
    comp = _StubCompletions(content)
    pipe = _mk_pipeline(
        semantic=_mk_semantic(comp), languages=["English", "中文"], expansions_per_language=1
    )
    res = await pipe.run("fix login", today=TODAY)
    assert res.diagnostics.parser_path is ParserPath.SEMANTIC
    assert set(_ids(res)) == {"t1", "t6"}
    assert len(comp.calls) == 1


@pytest.mark.asyncio
async def test_syntax_only_never_calls_the_model() -> None:
    comp = _StubCompletions("{}")
    res = await _mk_pipeline(semantic=_mk_semantic(comp)).run(
        "payment", today=TODAY, syntax_only=True
    )
    assert comp.calls == []
    assert _ids(res) == ["t1"]


@pytest.mark.asyncio
async def test_quality_filter_can_empty_the_result() -> None:
    res = await _mk_pipeline(quality_filter_strength=0.99).run("review", today=TODAY)
    assert res.state is SearchState.NO_CANDIDATES
    nc = res.diagnostics.no_candidates
    assert nc is not None
    assert nc.stage == "quality"
    assert nc.eliminated_by == "quality threshold"
    assert nc.close_to_threshold
    assert any("quality_filter_strength" in s for s in nc.suggestions)


@pytest.mark.asyncio
async def test_max_results_truncates() -> None:
    res = await _mk_pipeline(max_results=2).run("overdue", today=TODAY)
    assert len(res.tasks) == 2


@pytest.mark.asyncio
async def test_result_serializes_to_json() -> None:
    res = await _mk_pipeline().run("priority 1 2 tasks due this week", today=TODAY)
    data = search_result_to_dict(res)
    json.dumps(data, ensure_ascii=False)
    assert data["diagnostics"]["parser_path"] == "syntax"
    assert data["diagnostics"]["states"][-1] == "done"
    assert data["tasks"][0]["task"]["id"] in {"t1", "t2", "t6", "t9"}


@pytest.mark.asyncio
async def test_session_discards_superseded_query() -> None:
    seen: list[SearchConfig] = []

    class StubPipeline:
        def __init__(self, cfg, _source, _semantic):
            seen.append(cfg)

        async def run(self, query: str, **_kw: Any) -> SearchResult:
            if query == "slow":
                await asyncio.sleep(1.0)
            return SearchResult(query=query)

    cfg = SearchConfig()
    session = SearchSession(
        cfg, InMemoryTaskSource([]), pipeline_factory=StubPipeline  # type: ignore[arg-type]
    )
    first = asyncio.create_task(session.submit("slow"))
    await asyncio.sleep(0)
    second = await session.submit("fast")

    assert await first is None
    assert second is not None and second.query == "fast"
    assert all(c is not cfg for c in seen)


@pytest.mark.asyncio
async def test_equal_scores_fall_back_to_the_sort_chain() -> None:
    # t11 and t9 share every score bucket; the earlier due date ranks first.
    tasks = [*_mk_tasks(), Task("t11", "Send invoices", 2, date(2026, 10, 16))]
    res = await _mk_pipeline(tasks).run("priority 1 2 tasks due this week", today=TODAY)
    ids = _ids(res)
    assert ids == ["t1", "t6", "t2", "t11", "t9"]
    by_id = {s.task.id: s.composite_score for s in res.tasks}
    assert by_id["t11"] == pytest.approx(by_id["t9"])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query",
    ["what's for today", "What's due today?", "What’s due today?", "what do I need to do today"],
)
async def test_vague_today_with_contractions(query: str) -> None:
    keep = {"t1", "t2", "t3", "t5", "t6", "t7", "t8"}
    tasks = [t for t in _mk_tasks() if t.id in keep]
    res = await _mk_pipeline(tasks).run(query, today=TODAY, syntax_only=True)
    assert res.state is SearchState.DONE
    assert res.diagnostics.is_vague
    assert set(_ids(res)) == {"t1", "t6", "t8", "t2", "t7"}


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["+9999y", "-9999y", "d:+9999y", "report before +9999y"])
async def test_out_of_range_offsets_do_not_break_the_search(query: str) -> None:
    res = await _mk_pipeline().run(query, today=TODAY)
    assert res.state in (SearchState.DONE, SearchState.NO_CANDIDATES)
    spec = res.diagnostics.filter_spec
    assert spec is not None
    assert spec.due_date is None
    assert spec.due_date_range is None


@pytest.mark.asyncio
async def test_semantic_named_due_date_is_treated_as_time_context() -> None:
    content = json.dumps(
        {"coreKeywords": [], "dueDate": "today", "isVague": True, "confidence": 0.8}
    )
    keep = {"t1", "t2", "t3", "t5", "t6", "t7", "t8"}
    tasks = [t for t in _mk_tasks() if t.id in keep]
    comp = _StubCompletions(content)
    res = await _mk_pipeline(tasks, semantic=_mk_semantic(comp)).run(
        "what should I do today", today=TODAY
    )
    assert len(comp.calls) == 1
    spec = res.diagnostics.filter_spec
    assert spec is not None
    assert spec.due_date is None
    assert spec.due_date_range is not None and spec.due_date_range.end == TODAY
    assert set(_ids(res)) == {"t1", "t6", "t8", "t2", "t7"}
