from __future__ import annotations

from pathlib import Path

import pytest

from eval.metrics import EvalCase
from eval.runner import EvalRunner
from taskrank.types import SearchConfig

CASE_DIR = Path(__file__).resolve().parents[1] / "eval" / "cases"


def _runner(case_dir: Path = CASE_DIR) -> EvalRunner:
    return EvalRunner(SearchConfig(), case_dir=case_dir)


def test_decide_pass_uses_configured_metric() -> None:
    r = _runner()
    c = EvalCase(id="x", query="q", evaluation={"pass_metric": "recall", "pass_threshold": 0.5})
    assert r._decide_pass(c, {"recall": 0.6, "exact_set": 0.0})
    assert not r._decide_pass(c, {"recall": 0.4, "exact_set": 1.0})


def test_decide_pass_defaults_to_exact_set_and_order() -> None:
    r = _runner()
    c = EvalCase(id="x", query="q")
    assert r._decide_pass(c, {"exact_set": 1.0})
    assert not r._decide_pass(c, {"exact_set": 1.0, "order_match": 0.0})
    assert not r._decide_pass(c, {"exact_set": 0.5})


def test_decide_pass_expected_empty_result() -> None:
    r = _runner()
    c = EvalCase(id="x", query="q", expect_no_candidates=True)
    assert r._decide_pass(c, {"no_candidates_match": 1.0, "exact_set": 0.0})
    assert not r._decide_pass(c, {"no_candidates_match": 0.0, "exact_set": 1.0})


def test_load_cases_skips_files_without_query(tmp_path: Path) -> None:
    (tmp_path / "ok.yaml").write_text(
        "query: report\ntoday: 2026-10-14\nrelevant: [a]\ntasks:\n  - {id: a, text: report}\n",
        encoding="utf-8",
    )
    (tmp_path / "nope.yaml").write_text("tasks: []\n", encoding="utf-8")
    (tmp_path / "broken.yml").write_text("query: [unclosed\n", encoding="utf-8")
    cases = _runner(tmp_path).load_cases()
    assert [c.id for c in cases] == ["ok"]
    assert cases[0].today == "2026-10-14"
    assert cases[0].relevant == ["a"]


@pytest.mark.asyncio
async def test_bad_case_is_reported_not_raised(tmp_path: Path) -> None:
    c = EvalCase(id="bad", query="x", tasks=[{"id": "a", "text": "x", "priority": 99}])
    res = await _runner(tmp_path).run_case(c)
    assert not res.passed
    assert res.error


@pytest.mark.asyncio
async def test_bundled_cases_pass() -> None:
    r = _runner()
    cases = r.load_cases()
    assert cases
    results = await r.run_suite(cases)
    failed = [(x.case_id, x.metrics, x.error) for x in results if not x.passed]
    assert failed == []
