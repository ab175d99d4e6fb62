"""Shared types for the taskrank query and ranking engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TaskRankError(RuntimeError):
    """Base error for the search engine."""


class FilterSpecError(TaskRankError, ValueError):
    """A FilterSpec was built with inconsistent fields."""


class SemanticFailureKind(str, Enum):
    MALFORMED = "malformed"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    CONTEXT_TOO_LONG = "context_too_long"
    SERVER_ERROR = "server_error"
    CONNECTION_FAILED = "connection_failed"


class SemanticParseError(TaskRankError):
    """The semantic layer could not produce a usable ParsedQuery."""

    recoverable = True

    def __init__(self, kind: SemanticFailureKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")


# ---------------------------------------------------------------------------
# Task records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    """A task record supplied by the task source. Never mutated."""

    id: str
    text: str
    priority: int | None = None  # 1 (highest) .. 4
    due_date: date | None = None
    status: str = "open"  # category key or raw status symbol
    folder: str = ""
    tags: tuple[str, ...] = ()
    created_date: date | None = None


@dataclass(frozen=True)
class DateRange:
    """Inclusive date window; an open side is None."""

    start: date | None = None
    end: date | None = None

    def contains(self, d: date) -> bool:
        if self.start is not None and d < self.start:
            return False
        if self.end is not None and d > self.end:
            return False
        return True


# ---------------------------------------------------------------------------
# Parser outputs
# ---------------------------------------------------------------------------

# priority field: tuple of levels, "any" (has a priority), "none" (no priority)
PriorityValue = tuple[int, ...] | str | None


@dataclass(frozen=True)
class PartialFilterSpec:
    """What the deterministic syntax layer extracted from a query."""

    keywords: tuple[str, ...] = ()
    priority: PriorityValue = None
    due_date: str | None = None
    due_date_range: DateRange | None = None
    time_context: str | None = None
    status: tuple[str, ...] | None = None
    folder: str | None = None
    tags: tuple[str, ...] = ()
    connectors: tuple[str, ...] = ()
    corrected_typos: tuple[tuple[str, str], ...] = ()
    explicit: frozenset[str] = frozenset()
    residual: str = ""

    @property
    def has_properties(self) -> bool:
        return bool(
            self.priority is not None
            or self.due_date
            or self.due_date_range is not None
            or self.time_context
            or self.status
            or self.folder
            or self.tags
        )


@dataclass
class QueryDiagnostics:
    """Informational parse details. Never used for filtering."""

    detected_language: str = ""
    corrected_typos: list[tuple[str, str]] = field(default_factory=list)
    semantic_mappings: dict[str, str] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)


@dataclass
class ParsedQuery:
    core_keywords: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    expansions: dict[str, dict[str, list[str]]] = field(default_factory=dict)
    priority: PriorityValue = None
    due_date: str | None = None
    due_date_range: DateRange | None = None
    time_context: str | None = None
    status: tuple[str, ...] | None = None
    folder: str | None = None
    tags: tuple[str, ...] = ()
    is_vague: bool = False
    confidence: float = 1.0
    diagnostics: QueryDiagnostics = field(default_factory=QueryDiagnostics)


@dataclass(frozen=True)
class FilterSpec:
    """Normalized, filter-ready projection of a ParsedQuery.

    ``keywords`` keeps overlapping variants for recall; ``scoring_keywords`` is
    the deduplicated set used for relevance.
    """

    keywords: tuple[str, ...] = ()
    core_keywords: tuple[str, ...] = ()
    scoring_keywords: tuple[str, ...] = ()
    priority: PriorityValue = None
    due_date: str | None = None
    due_date_range: DateRange | None = None
    status: tuple[str, ...] | None = None
    folder: str | None = None
    tags: tuple[str, ...] = ()
    is_vague: bool = False

    def __post_init__(self) -> None:
        if self.due_date and self.due_date_range is not None:
            raise FilterSpecError("due_date and due_date_range are mutually exclusive")
        if len(self.keywords) < len(self.core_keywords):
            raise FilterSpecError("keywords must include every core keyword")
        if self.is_vague and self.keywords:
            raise FilterSpecError("vague FilterSpec cannot carry keywords")
        if isinstance(self.priority, tuple):
            bad = [p for p in self.priority if not isinstance(p, int) or not 1 <= p <= 4]
            if bad or not self.priority:
                raise FilterSpecError(f"invalid priority levels: {self.priority!r}")
        elif self.priority not in (None, "any", "none"):
            raise FilterSpecError(f"invalid priority value: {self.priority!r}")
        r = self.due_date_range
        if r is not None:
            if r.start is None and r.end is None:
                raise FilterSpecError("due_date_range needs a start or an end")
            if r.start is not None and r.end is not None and r.start > r.end:
                raise FilterSpecError(f"empty due_date_range: {r.start} > {r.end}")

    @property
    def property_dimensions(self) -> list[str]:
        dims: list[str] = []
        if self.priority is not None:
            dims.append("priority")
        if self.status:
            dims.append("status")
        if self.due_date or self.due_date_range is not None:
            dims.append("due_date")
        if self.folder:
            dims.append("folder")
        if self.tags:
            dims.append("tags")
        return dims


# ---------------------------------------------------------------------------
# Scoring / ranking types
# ---------------------------------------------------------------------------


class SortCriterion(str, Enum):
    DUE_DATE = "due_date"
    PRIORITY = "priority"
    STATUS = "status"


@dataclass
class ScoredTask:
    task: Task
    relevance_score: float = 0.0
    due_date_score: float = 0.0
    priority_score: float = 0.0
    status_score: float = 0.0
    composite_score: float = 0.0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ModelConfig:
    """OpenAI-compatible endpoint used by the semantic layer."""

    name: str = "qwen/qwen3-4b-2507"
    base_url: str = "http://localhost:1234/v1"
    api_key: str = "lm-studio"
    temperature: float = 0.1
    max_output_tokens: int = 2048
    request_timeout_s: float = 30.0


@dataclass
class StatusCategory:
    key: str
    display_name: str
    symbols: list[str] = field(default_factory=list)
    terms: list[str] = field(default_factory=list)
    score: float = 0.5
    order: int = 5


def default_status_categories() -> list[StatusCategory]:
    return [
        StatusCategory(
            key="in_progress",
            display_name="In progress",
            symbols=["/", "~"],
            terms=["in progress", "in-progress", "inprogress", "working", "ongoing", "active",
                   "doing", "wip", "进行中", "正在做", "处理中", "pågående", "pågår"],
            score=1.0,
            order=1,
        ),
        StatusCategory(
            key="open",
            display_name="Open",
            symbols=[" "],
            terms=["open", "todo", "to do", "incomplete", "unstarted", "not started",
                   "pending", "未完成", "待办", "未开始", "öppen", "ogjord", "att göra"],
            score=0.8,
            order=2,
        ),
        StatusCategory(
            key="other",
            display_name="Other",
            symbols=[],
            terms=[],
            score=0.5,
            order=5,
        ),
        StatusCategory(
            key="completed",
            display_name="Completed",
            symbols=["x", "X"],
            terms=["done", "completed", "complete", "finished", "closed", "resolved",
                   "完成", "已完成", "已结束", "klar", "färdig", "avklarad"],
            score=0.2,
            order=6,
        ),
        StatusCategory(
            key="cancelled",
            display_name="Cancelled",
            symbols=["-"],
            terms=["cancelled", "canceled", "abandoned", "dropped", "取消", "已取消",
                   "放弃", "avbruten", "inställd"],
            score=0.1,
            order=7,
        ),
    ]


@dataclass
class ScoringConfig:
    """Scoring policy. Every constant is tunable."""

    relevance_coefficient: float = 20.0
    due_date_coefficient: float = 4.0
    priority_coefficient: float = 1.0
    status_coefficient: float = 1.0

    relevance_core_weight: float = 0.2
    exact_match_strength: float = 1.0
    prefix_match_strength: float = 0.7
    substring_match_strength: float = 0.4

    due_overdue_score: float = 1.5
    due_today_score: float = 1.2
    due_within_near_score: float = 1.0
    due_within_far_score: float = 0.5
    due_later_score: float = 0.2
    due_none_score: float = 0.1
    due_near_days: int = 7
    due_far_days: int = 30

    priority_scores: dict[int, float] = field(
        default_factory=lambda: {1: 1.0, 2: 0.75, 3: 0.5, 4: 0.2}
    )
    priority_none_score: float = 0.1

    tie_epsilon: float = 1e-4


@dataclass
class SearchConfig:
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    sort_order: list[str] = field(default_factory=lambda: ["due_date", "priority", "status"])
    status_categories: list[StatusCategory] = field(default_factory=default_status_categories)

    quality_filter_strength: float = 0.0  # fraction of max score; 0 disables
    minimum_relevance_score: float = 0.0
    max_results: int = 200

    # Semantic layer
    semantic_enabled: bool = True
    semantic_timeout_s: float = 20.0
    languages: list[str] = field(default_factory=lambda: ["English", "中文"])
    expansions_per_language: int = 5
    model: ModelConfig = field(default_factory=ModelConfig)

    # Term dictionary layer 1; keys: priority_<1-4>, status_<key>, due_<concept>,
    # stop, generic
    user_terms: dict[str, list[str]] = field(default_factory=dict)

    vague_threshold: float = 0.6
    week_start: int = 0  # 0 = Monday, 6 = Sunday


# ---------------------------------------------------------------------------
# Pipeline result types
# ---------------------------------------------------------------------------


class SearchState(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    SEMANTIC_FAILED = "semantic_failed"
    FILTERING = "filtering"
    SCORING = "scoring"
    RANKED = "ranked"
    NO_CANDIDATES = "no_candidates"
    DONE = "done"


class ParserPath(str, Enum):
    SYNTAX = "syntax"  # semantic layer skipped
    SEMANTIC = "semantic"
    SYNTAX_FALLBACK = "syntax_fallback"  # semantic layer failed


@dataclass
class FilterPass:
    name: str
    before: int
    after: int
    pushed_down: bool = False


@dataclass
class QualityMath:
    active_components: list[str] = field(default_factory=list)
    max_score: float = 0.0
    strength: float = 0.0
    threshold: float = 0.0
    minimum_relevance: float = 0.0
    removed_by_threshold: int = 0
    removed_by_relevance: int = 0
    top_score: float = 0.0


@dataclass
class NoCandidatesDiagnosis:
    stage: str  # "filter" | "quality" | "source"
    eliminated_by: str
    before: int = 0
    detail: str = ""
    suggestions: list[str] = field(default_factory=list)
    close_to_threshold: bool = False
    weak_keywords: list[str] = field(default_factory=list)


@dataclass
class SearchDiagnostics:
    parser_path: ParserPath = ParserPath.SYNTAX
    is_vague: bool = False
    confidence: float = 1.0
    fallback_reason: str | None = None
    fallback_candidates: int | None = None
    states: list[SearchState] = field(default_factory=list)
    filter_passes: list[FilterPass] = field(default_factory=list)
    quality: QualityMath = field(default_factory=QualityMath)
    query: QueryDiagnostics = field(default_factory=QueryDiagnostics)
    filter_spec: FilterSpec | None = None
    no_candidates: NoCandidatesDiagnosis | None = None
    loaded_tasks: int = 0
    latency_ms: float = 0.0


@dataclass
class SearchResult:
    query: str
    tasks: list[ScoredTask] = field(default_factory=list)
    diagnostics: SearchDiagnostics = field(default_factory=SearchDiagnostics)

    @property
    def state(self) -> SearchState:
        return self.diagnostics.states[-1] if self.diagnostics.states else SearchState.IDLE
