from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from eval.metrics import EvalCase, evaluate_case
from taskrank.pipeline import SearchPipeline
from taskrank.source import InMemoryTaskSource, task_from_dict
from taskrank.types import SearchConfig, SearchResult, TaskRankError

logger = logging.getLogger(__name__)


@dataclass
class EvalResult:
    case_id: str
    search_result: SearchResult | None
    metrics: dict[str, float] = field(default_factory=dict)
    passed: bool = False
    error: str | None = None


def _as_str_list(v: Any) -> list[str]:
    if v is None:
        return []
    if not isinstance(v, list):
        v = [v]
    return [str(x).strip() for x in v if str(x).strip()]


class EvalRunner:
    """Runs YAML ranking cases through the pipeline with the semantic layer off."""

    def __init__(self, config: SearchConfig, case_dir: str | Path):
        self.config = config
        self.case_dir = Path(case_dir)
        self.console = Console()

    def load_cases(self, case_dir: str | Path | None = None) -> list[EvalCase]:
        p = Path(case_dir) if case_dir is not None else self.case_dir
        if not p.exists() or not p.is_dir():
            return []

        cases: list[EvalCase] = []
        for fp in sorted(list(p.rglob("*.yaml")) + list(p.rglob("*.yml"))):
            try:
                raw = yaml.safe_load(fp.read_text(encoding="utf-8"))
            except yaml.YAMLError as e:
                logger.warning("eval: skipping %s: %s", fp, e)
                continue
            if not isinstance(raw, dict) or not raw.get("query"):
                continue

            tasks = raw.get("tasks") or []
            evaluation = raw.get("evaluation") or {}
            if not isinstance(tasks, list):
                tasks = []
            if not isinstance(evaluation, dict):
                evaluation = {}
            today = raw.get("today")

            cases.append(
                EvalCase(
                    id=str(raw.get("id") or fp.stem),
                    query=str(raw["query"]).strip(),
                    tasks=[t for t in tasks if isinstance(t, dict)],
                    today=str(today) if today is not None else None,
                    relevant=_as_str_list(raw.get("relevant") or raw.get("expected_ids")),
                    expected_order=_as_str_list(raw.get("expected_order")),
                    expect_no_candidates=bool(raw.get("expect_no_candidates")),
                    evaluation=evaluation,
                    tags=_as_str_list(raw.get("tags")),
                )
            )
        return cases

    def _decide_pass(self, case: EvalCase, metrics: dict[str, float]) -> bool:
        ev = case.evaluation or {}
        pass_metric = ev.get("pass_metric")
        threshold = float(ev.get("pass_threshold") or 1.0)
        if isinstance(pass_metric, str) and pass_metric in metrics:
            return float(metrics.get(pass_metric) or 0.0) >= threshold

        # Defaults: expected empty result, then exact set plus order when given.
        if "no_candidates_match" in metrics:
            return metrics["no_candidates_match"] >= 1.0
        if metrics.get("exact_set", 0.0) < 1.0:
            return False
        return metrics.get("order_match", 1.0) >= 1.0

    async def run_case(self, case: EvalCase) -> EvalResult:
        try:
            source = InMemoryTaskSource(task_from_dict(t, i) for i, t in enumerate(case.tasks))
            today = date.fromisoformat(case.today) if case.today else None
            pipe = SearchPipeline(self.config, source)
            sr = await pipe.run(case.query, today=today, syntax_only=True)
            metrics = evaluate_case(case, sr)
            passed = self._decide_pass(case, metrics)
            return EvalResult(case_id=case.id, search_result=sr, metrics=metrics, passed=passed)
        except (TaskRankError, ValueError, TypeError) as e:
            logger.warning("eval: case %s failed: %s", case.id, e)
            return EvalResult(case_id=case.id, search_result=None, passed=False, error=str(e))

    async def run_suite(self, cases: list[EvalCase]) -> list[EvalResult]:
        results: list[EvalResult] = []
        for c in cases:
            r = await self.run_case(c)
            results.append(r)
        return results

    def print_results(self, results: list[EvalResult], title: str) -> None:
        tbl = Table(title=title)
        tbl.add_column("Case")
        tbl.add_column("Pass", justify="center")
        tbl.add_column("P@k", justify="right")
        tbl.add_column("Recall", justify="right")
        tbl.add_column("First", justify="right")
        tbl.add_column("Returned", justify="right")
        tbl.add_column("Latency ms", justify="right")

        for r in results:
            m = r.metrics
            tbl.add_row(
                r.case_id,
                "yes" if r.passed else ("error" if r.error else "no"),
                f"{m.get('precision_at_k', 0.0):.2f}",
                f"{m.get('recall', 0.0):.2f}",
                f"{m.get('first_relevant_rank', 0.0):.0f}",
                f"{m.get('returned', 0.0):.0f}",
                f"{m.get('latency_ms', 0.0):.1f}",
            )
        self.console.print(tbl)
        passed = sum(1 for r in results if r.passed)
        self.console.print(f"{passed}/{len(results)} passed")
