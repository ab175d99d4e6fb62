from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable
from dataclasses import asdict
from datetime import date
from enum import Enum
from typing import Any

from taskrank.filters import PUSHDOWN_DIMENSIONS, FilterEngine, FilterOutcome
from taskrank.normalizer import QueryNormalizer
from taskrank.ranking import RankingEngine, normalize_sort_spec
from taskrank.scoring import ScoringEngine
from taskrank.semantic import SemanticParser
from taskrank.source import TaskSource
from taskrank.syntax import SyntaxParser
from taskrank.terms import TermDictionary, tokenize
from taskrank.types import (
    FilterSpec,
    NoCandidatesDiagnosis,
    ParserPath,
    PartialFilterSpec,
    QualityMath,
    ScoredTask,
    SearchConfig,
    SearchDiagnostics,
    SearchResult,
    SearchState,
    SemanticParseError,
)
from taskrank.vagueness import is_vague_query

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.perf_counter() * 1000.0


def _describe_priority(p: Any) -> str:
    if isinstance(p, tuple):
        return ",".join(f"P{x}" for x in p)
    return str(p)


class SearchPipeline:
    """Parse, filter, score and rank one query against a task snapshot.

    State flow::

        IDLE -> PARSING -> [SEMANTIC_FAILED -> PARSING] -> FILTERING
             -> SCORING -> RANKED -> DONE
                     \\-> NO_CANDIDATES (from FILTERING or SCORING)

    Semantic failures are never raised to the caller; they are recorded in
    the diagnostics and the deterministic parse is used instead.
    """

    def __init__(
        self,
        config: SearchConfig,
        source: TaskSource,
        semantic: SemanticParser | None = None,
    ):
        self.config = config
        self.source = source
        self.semantic = semantic
        self.syntax = SyntaxParser()

    def _enter(self, diag: SearchDiagnostics, state: SearchState) -> None:
        diag.states.append(state)
        logger.info("search: -> %s", state.value)

    def _wants_semantic(self, syntax: PartialFilterSpec, dictionary: TermDictionary,
                        syntax_only: bool) -> bool:
        if self.semantic is None or syntax_only or not self.config.semantic_enabled:
            return False
        # Pure property queries carry nothing for the model to interpret.
        stop = dictionary.stop_terms
        return any(t not in stop for t in tokenize(syntax.residual, vocab=stop))

    async def run(
        self, query: str, *, today: date | None = None, syntax_only: bool = False
    ) -> SearchResult:
        t0 = _now_ms()
        cfg = self.config
        today = today or date.today()
        diag = SearchDiagnostics()
        result = SearchResult(query=query, diagnostics=diag)
        self._enter(diag, SearchState.IDLE)

        dictionary = TermDictionary.build(cfg.user_terms, cfg.status_categories)
        sort_chain = normalize_sort_spec(cfg.sort_order)

        # Parsing
        self._enter(diag, SearchState.PARSING)
        syntax = self.syntax.parse(query, dictionary, today=today)
        vagueness = is_vague_query(
            syntax.residual,
            dictionary.stop_terms,
            dictionary.generic_terms,
            threshold=cfg.vague_threshold,
            explicit_syntax=bool(syntax.explicit),
        )
        semantic = None
        diag.parser_path = ParserPath.SYNTAX
        if self.semantic is not None and self._wants_semantic(syntax, dictionary, syntax_only):
            try:
                semantic = await self.semantic.parse(query, dictionary, cfg)
                diag.parser_path = ParserPath.SEMANTIC
            except SemanticParseError as e:
                self._enter(diag, SearchState.SEMANTIC_FAILED)
                logger.warning("search: semantic layer failed, using syntax only: %s", e)
                diag.parser_path = ParserPath.SYNTAX_FALLBACK
                diag.fallback_reason = str(e)
                self._enter(diag, SearchState.PARSING)

        normalized = QueryNormalizer(cfg.week_start).normalize(
            syntax, semantic, dictionary, today=today, vagueness=vagueness
        )
        spec = normalized.spec
        diag.filter_spec = spec
        diag.query = normalized.parsed.diagnostics
        diag.is_vague = normalized.parsed.is_vague
        diag.confidence = normalized.parsed.confidence

        # Filtering
        self._enter(diag, SearchState.FILTERING)
        engine = FilterEngine(normalized.dictionary, cfg.week_start)
        predicate = None
        pushed: frozenset[str] = frozenset()
        if self.source.supports_pushdown and not (spec.is_vague and not spec.property_dimensions):
            predicate = engine.property_predicate(spec, today)
            if predicate is not None:
                pushed = PUSHDOWN_DIMENSIONS
        tasks = self.source.load(predicate)
        diag.loaded_tasks = len(tasks)
        outcome = engine.apply(tasks, spec, today=today, skip=pushed)
        diag.filter_passes = outcome.passes
        if diag.parser_path is ParserPath.SYNTAX_FALLBACK:
            diag.fallback_candidates = len(outcome.tasks)

        if not outcome.tasks:
            diag.no_candidates = self._diagnose_filter(outcome, spec, pushed, diag)
            return self._finish(result, SearchState.NO_CANDIDATES, t0)

        # Scoring
        self._enter(diag, SearchState.SCORING)
        scorer = ScoringEngine(cfg.scoring, normalized.dictionary, cfg.status_categories)
        scoring = scorer.score(outcome.tasks, spec, sort_chain, today=today)
        kept, diag.quality = scorer.apply_quality(
            scoring, cfg.quality_filter_strength, cfg.minimum_relevance_score
        )
        if not kept:
            diag.no_candidates = self._diagnose_quality(
                scoring.scored, spec, diag.quality, scorer
            )
            return self._finish(result, SearchState.NO_CANDIDATES, t0)

        # Ranking
        ranked = RankingEngine(dictionary, cfg.scoring.tie_epsilon).sort(kept, sort_chain)
        self._enter(diag, SearchState.RANKED)
        if cfg.max_results > 0 and len(ranked) > cfg.max_results:
            logger.info("search: truncating %d results to %d", len(ranked), cfg.max_results)
            ranked = ranked[: cfg.max_results]
        result.tasks = ranked
        return self._finish(result, SearchState.DONE, t0)

    def _finish(self, result: SearchResult, state: SearchState, t0: float) -> SearchResult:
        self._enter(result.diagnostics, state)
        result.diagnostics.latency_ms = _now_ms() - t0
        logger.info(
            "search: %r -> %d results via %s (%.0f ms)",
            result.query,
            len(result.tasks),
            result.diagnostics.parser_path.value,
            result.diagnostics.latency_ms,
        )
        return result

    # -- no-candidates diagnosis -------------------------------------------

    def _diagnose_filter(
        self,
        outcome: FilterOutcome,
        spec: FilterSpec,
        pushed: frozenset[str],
        diag: SearchDiagnostics,
    ) -> NoCandidatesDiagnosis:
        if diag.loaded_tasks == 0:
            if pushed:
                dims = [d for d in spec.property_dimensions if d in pushed]
                return NoCandidatesDiagnosis(
                    stage="source",
                    eliminated_by="+".join(dims),
                    detail="the task source returned nothing for the pushed-down filters",
                    suggestions=[self._relax_hint(d, spec) for d in dims],
                )
            return NoCandidatesDiagnosis(
                stage="source",
                eliminated_by="empty source",
                detail="the task source returned no tasks",
                suggestions=["check the task source"],
            )

        p = outcome.eliminated_by()
        name = p.name if p else "filters"
        before = p.before if p else diag.loaded_tasks
        suggestions = [self._relax_hint(name, spec)]
        if name == "keywords" and diag.parser_path is not ParserPath.SEMANTIC:
            suggestions.append("enable the semantic layer for cross-language keyword expansion")
        return NoCandidatesDiagnosis(
            stage="filter",
            eliminated_by=name,
            before=before,
            detail=f"the {name} filter reduced {before} candidates to 0",
            suggestions=suggestions,
            weak_keywords=list(spec.keywords) if name == "keywords" else [],
        )

    def _relax_hint(self, dimension: str, spec: FilterSpec) -> str:
        if dimension == "priority":
            return f"widen or remove the priority filter ({_describe_priority(spec.priority)})"
        if dimension == "status":
            return f"include more statuses than {', '.join(spec.status or ())}"
        if dimension == "due_date":
            if spec.due_date_range is not None:
                r = spec.due_date_range
                return f"widen the due-date range {r.start or '...'}..{r.end or '...'}"
            return f"widen the due-date filter ({spec.due_date})"
        if dimension == "folder":
            return f"check the folder name ({spec.folder})"
        if dimension == "tags":
            return f"check the tags ({', '.join(spec.tags)})"
        if dimension == "keywords":
            return f"no task text contains any of {list(spec.keywords)}; try other or fewer words"
        return "relax the query filters"

    def _diagnose_quality(
        self,
        scored: list[ScoredTask],
        spec: FilterSpec,
        math: QualityMath,
        scorer: ScoringEngine,
    ) -> NoCandidatesDiagnosis:
        cfg = self.config
        weak = [
            kw
            for kw in spec.scoring_keywords
            if not any(scorer._match_strength(kw, s.task.text.lower()) > 0 for s in scored)
        ]
        suggestions: list[str] = []
        if math.removed_by_threshold:
            eliminated_by = "quality threshold"
            close = math.top_score >= 0.5 * math.threshold
            detail = (
                f"top score {math.top_score:.2f} is below the threshold {math.threshold:.2f} "
                f"({math.strength:.0%} of max {math.max_score:.2f} over "
                f"{', '.join(math.active_components) or 'no components'})"
            )
            ratio = math.top_score / math.max_score if math.max_score else 0.0
            suggestions.append(
                f"lower quality_filter_strength from {math.strength:.0%} to {ratio:.0%} or less"
            )
            if "relevance" in math.active_components and cfg.scoring.relevance_coefficient < 10:
                suggestions.append("raise the relevance coefficient")
        else:
            eliminated_by = "minimum relevance"
            close = False
            best = max((s.relevance_score for s in scored), default=0.0)
            detail = (
                f"best relevance {best:.2f} is below minimum_relevance_score "
                f"{math.minimum_relevance:.2f}"
            )
            suggestions.append(f"lower minimum_relevance_score to {best:.2f} or less")
        if weak:
            suggestions.append(f"drop or rephrase weak keywords {weak}")
        return NoCandidatesDiagnosis(
            stage="quality",
            eliminated_by=eliminated_by,
            before=len(scored),
            detail=detail,
            suggestions=suggestions,
            close_to_threshold=close,
            weak_keywords=weak,
        )


class SearchSession:
    """Runs successive queries; a newer query cancels and discards older ones."""

    def __init__(
        self,
        config: SearchConfig,
        source: TaskSource,
        semantic: SemanticParser | None = None,
        pipeline_factory: Callable[..., SearchPipeline] = SearchPipeline,
    ):
        self.config = config
        self.source = source
        self.semantic = semantic
        self.pipeline_factory = pipeline_factory
        self._generation = 0
        self._inflight: asyncio.Task[SearchResult] | None = None

    async def submit(self, query: str, **kwargs: Any) -> SearchResult | None:
        """Run ``query``; returns None when a newer submission superseded it."""
        self._generation += 1
        gen = self._generation
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

        snapshot = copy.deepcopy(self.config)
        pipe = self.pipeline_factory(snapshot, self.source, self.semantic)
        task = asyncio.create_task(pipe.run(query, **kwargs))
        self._inflight = task
        try:
            result = await task
        except asyncio.CancelledError:
            if gen != self._generation:
                logger.info("search: %r superseded; discarded", query)
                return None
            raise
        if gen != self._generation:
            logger.info("search: %r superseded; discarded", query)
            return None
        return result


def _jsonable(v: Any) -> Any:
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, date):
        return v.isoformat()
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return [_jsonable(x) for x in v]
    return v


def search_result_to_dict(res: SearchResult) -> dict[str, Any]:
    """Plain-data form of a SearchResult for JSON output."""
    return _jsonable(asdict(res))
