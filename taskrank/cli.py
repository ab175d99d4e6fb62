from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import fields
from datetime import date
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from taskrank.pipeline import SearchPipeline, search_result_to_dict
from taskrank.semantic import SemanticParser
from taskrank.source import InMemoryTaskSource, load_tasks_file
from taskrank.syntax import SyntaxParser
from taskrank.terms import TermDictionary
from taskrank.types import (
    ModelConfig,
    ScoringConfig,
    SearchConfig,
    SearchResult,
    SearchState,
    StatusCategory,
    TaskRankError,
    default_status_categories,
)
from taskrank.vagueness import is_vague_query

logger = logging.getLogger(__name__)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def _load_model(config_dir: Path) -> ModelConfig:
    cfg = _read_yaml(config_dir / "models.yaml")
    backends = cfg.get("backends") or {}
    models = cfg.get("models") or {}
    defaults = cfg.get("defaults") or {}

    key = str(defaults.get("semantic") or "")
    if not key:
        return ModelConfig()
    entry = models.get(key) or {}
    backend = backends.get(entry.get("backend")) if isinstance(backends, dict) else None
    base = ModelConfig()
    base_url, api_key = base.base_url, base.api_key
    if isinstance(backend, dict):
        base_url = str(backend.get("base_url") or base_url)
        api_key = str(backend.get("api_key") or api_key)
    return ModelConfig(
        name=str(entry.get("name") or key),
        base_url=base_url,
        api_key=api_key,
        temperature=float(entry.get("temperature") or base.temperature),
        max_output_tokens=int(entry.get("max_output_tokens") or base.max_output_tokens),
        request_timeout_s=float(entry.get("request_timeout_s") or base.request_timeout_s),
    )


def _known(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - names)
    if unknown:
        logger.warning("config: ignoring unknown %s keys %s", cls.__name__, unknown)
    return {k: v for k, v in raw.items() if k in names}


def _load_status_categories(raw: Any) -> list[StatusCategory]:
    if not isinstance(raw, list) or not raw:
        return default_status_categories()
    out: list[StatusCategory] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("key"):
            continue
        entry = _known(StatusCategory, item)
        entry.setdefault("display_name", str(item["key"]).replace("_", " ").title())
        entry["symbols"] = [str(s) for s in entry.get("symbols") or []]
        entry["terms"] = [str(t) for t in entry.get("terms") or []]
        out.append(StatusCategory(**entry))
    return out or default_status_categories()


def load_search_config(config_dir: Path) -> SearchConfig:
    cfg = _read_yaml(config_dir / "search.yaml")
    search = cfg.get("search") or {}
    if not isinstance(search, dict):
        search = {}

    scoring = search.pop("scoring", None) or {}
    statuses = search.pop("status_categories", None)
    search.pop("model", None)
    try:
        sc = ScoringConfig(**_known(ScoringConfig, scoring if isinstance(scoring, dict) else {}))
        sc.priority_scores = {int(k): float(v) for k, v in sc.priority_scores.items()}
        out = SearchConfig(**_known(SearchConfig, search))
    except (TypeError, ValueError) as e:
        raise TaskRankError(f"{config_dir / 'search.yaml'}: {e}") from e
    out.scoring = sc
    out.status_categories = _load_status_categories(statuses)
    out.user_terms = {str(k): list(v or []) for k, v in (out.user_terms or {}).items()}
    out.model = _load_model(config_dir)
    return out


def _apply_runtime_overrides(args: argparse.Namespace, cfg: SearchConfig) -> SearchConfig:
    sem = getattr(args, "semantic", None)
    if sem is not None:
        cfg.semantic_enabled = bool(sem)
    sort = getattr(args, "sort", None)
    if sort:
        cfg.sort_order = [s.strip() for s in sort.split(",") if s.strip()]
    quality = getattr(args, "quality", None)
    if quality is not None:
        cfg.quality_filter_strength = max(0.0, min(1.0, float(quality)))
    limit = getattr(args, "limit", None)
    if limit is not None:
        cfg.max_results = int(limit)
    return cfg


def _today(args: argparse.Namespace) -> date | None:
    return getattr(args, "today", None)


def _render_result(res: SearchResult, console: Console, verbose: bool) -> None:
    d = res.diagnostics
    if res.state is SearchState.NO_CANDIDATES and d.no_candidates is not None:
        nc = d.no_candidates
        console.print(f"[bold]No results[/bold] ({nc.stage}: {nc.eliminated_by})")
        console.print(nc.detail)
        for s in nc.suggestions:
            console.print(f"  - {s}")
    else:
        tbl = Table(title=f"Results for {res.query!r}")
        tbl.add_column("#", justify="right")
        tbl.add_column("Score", justify="right")
        tbl.add_column("P", justify="center")
        tbl.add_column("Due")
        tbl.add_column("Status")
        tbl.add_column("Task")
        for i, s in enumerate(res.tasks, start=1):
            t = s.task
            tbl.add_row(
                str(i),
                f"{s.composite_score:.2f}",
                str(t.priority or ""),
                t.due_date.isoformat() if t.due_date else "",
                t.status,
                t.text,
            )
        console.print(tbl)

    path = d.parser_path.value
    if d.fallback_reason:
        path += f" ({d.fallback_reason})"
    console.print(
        f"parser={path} vague={d.is_vague} confidence={d.confidence:.2f} "
        f"loaded={d.loaded_tasks} latency={d.latency_ms:.0f}ms"
    )
    if verbose:
        for p in d.filter_passes:
            mark = " (source)" if p.pushed_down else ""
            console.print(f"  filter {p.name}: {p.before} -> {p.after}{mark}")
        q = d.quality
        console.print(
            f"  components={q.active_components} max={q.max_score:.2f} "
            f"threshold={q.threshold:.2f}"
        )
        for note in d.query.notes:
            console.print(f"  note: {note}")


async def _cmd_search(args: argparse.Namespace, cfg: SearchConfig, console: Console) -> int:
    try:
        tasks = load_tasks_file(args.tasks)
    except (OSError, TaskRankError) as e:
        console.print(f"Cannot load tasks: {e}")
        return 2

    semantic = SemanticParser(cfg.model) if cfg.semantic_enabled else None
    pipe = SearchPipeline(cfg, InMemoryTaskSource(tasks), semantic)
    res = await pipe.run(args.query, today=_today(args), syntax_only=not cfg.semantic_enabled)
    if args.json:
        console.print_json(json.dumps(search_result_to_dict(res), ensure_ascii=False))
    else:
        _render_result(res, console, args.verbose)
    return 0


async def _cmd_parse(args: argparse.Namespace, cfg: SearchConfig, console: Console) -> int:
    dictionary = TermDictionary.build(cfg.user_terms, cfg.status_categories)
    spec = SyntaxParser().parse(args.query, dictionary, today=_today(args) or date.today())
    vague = is_vague_query(
        spec.residual,
        dictionary.stop_terms,
        dictionary.generic_terms,
        threshold=cfg.vague_threshold,
        explicit_syntax=bool(spec.explicit),
    )
    tbl = Table(title=f"Syntax parse of {args.query!r}")
    tbl.add_column("Field")
    tbl.add_column("Value")
    for f in fields(spec):
        v = getattr(spec, f.name)
        if v in (None, (), "", frozenset()):
            continue
        tbl.add_row(f.name, str(sorted(v) if isinstance(v, frozenset) else v))
    tbl.add_row("vague", f"{vague.is_vague} ({vague.confidence:.2f})")
    console.print(tbl)
    return 0


async def _cmd_eval(args: argparse.Namespace, cfg: SearchConfig, console: Console) -> int:
    from eval.runner import EvalRunner

    case_dir = Path(args.case_dir)
    runner = EvalRunner(cfg, case_dir)
    cases = runner.load_cases()
    if not cases:
        console.print(f"No cases found in {case_dir}")
        return 1

    results = await runner.run_suite(cases)
    runner.print_results(results, "Ranking evaluation")
    return 0 if all(r.passed for r in results) else 1


async def _cmd_status(args: argparse.Namespace, cfg: SearchConfig, console: Console) -> int:
    tbl = Table(title="Status")
    tbl.add_column("Service")
    tbl.add_column("OK")
    tbl.add_column("Details")

    parser = SemanticParser(cfg.model)
    ok = await parser.health_check()
    tbl.add_row(
        "llm", "yes" if ok else "no", f"model={cfg.model.name} base_url={cfg.model.base_url}"
    )
    console.print(tbl)
    return 0 if ok else 1


def _add_query_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--today", type=date.fromisoformat, default=None, help="reference date (YYYY-MM-DD)"
    )


def _build_parser(default_case_dir: Path) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="taskrank", description="Task query search and ranking")
    p.add_argument("--log-level", default="WARNING", help="logging level")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("search", help="search a task file")
    sp.add_argument("query", type=str)
    sp.add_argument("--tasks", type=str, required=True, help="YAML or JSON task file")
    sp.add_argument("--json", action="store_true", help="print the full result as JSON")
    sp.add_argument("-v", "--verbose", action="store_true", help="print filter diagnostics")
    sp.add_argument(
        "--semantic",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable/disable the language-model query parser",
    )
    sp.add_argument(
        "--sort", type=str, default=None, help="tie-break order, e.g. due_date,priority"
    )
    sp.add_argument("--quality", type=float, default=None, help="quality filter strength (0-1)")
    sp.add_argument("--limit", type=int, default=None, help="maximum results")
    _add_query_flags(sp)

    pp = sub.add_parser("parse", help="show the syntax-layer parse of a query")
    pp.add_argument("query", type=str)
    _add_query_flags(pp)

    ep = sub.add_parser("eval", help="run the ranking evaluation cases")
    ep.add_argument("--case-dir", type=str, default=str(default_case_dir))

    sub.add_parser("status", help="check model connectivity")
    return p


def main() -> None:
    console = Console()
    base_dir = Path(__file__).resolve().parents[1]
    config_dir = base_dir / "configs"
    default_case_dir = base_dir / "eval" / "cases"

    parser = _build_parser(default_case_dir)
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = _apply_runtime_overrides(args, load_search_config(config_dir))
    except TaskRankError as e:
        console.print(f"Configuration error: {e}")
        raise SystemExit(2) from e

    async def run_cmd() -> int:
        if args.cmd == "search":
            return await _cmd_search(args, cfg, console)
        if args.cmd == "parse":
            return await _cmd_parse(args, cfg, console)
        if args.cmd == "eval":
            return await _cmd_eval(args, cfg, console)
        if args.cmd == "status":
            return await _cmd_status(args, cfg, console)
        console.print(f"Unknown command: {args.cmd}")
        return 2

    raise SystemExit(asyncio.run(run_cmd()))
