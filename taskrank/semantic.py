from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import date
from typing import Annotated, Any, Literal

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskrank.dates import TIME_CONTEXT_TOKENS, canonical_due_token
from taskrank.terms import TermDictionary, unique
from taskrank.types import (
    DateRange,
    ModelConfig,
    ParsedQuery,
    QueryDiagnostics,
    SearchConfig,
    SemanticFailureKind,
    SemanticParseError,
)

logger = logging.getLogger(__name__)


_REASONING_RE = re.compile(
    r"<(think|thinking|reasoning|thought)>.*?</\1>", re.DOTALL | re.IGNORECASE
)
_CTX_OVERFLOW_RE = re.compile(
    r"context length|context window|maximum context|too many tokens|tokens to keep",
    re.IGNORECASE,
)
_EXPECTED_KEYS = ("coreKeywords", "isVague", "expandedKeywords")
_MAX_CORE_WORDS = 4
_CONTEXT_OF_TOKEN = {tok: ctx for ctx, tok in TIME_CONTEXT_TOKENS.items()}

TimeContext = Literal[
    "today",
    "tomorrow",
    "yesterday",
    "this_week",
    "next_week",
    "last_week",
    "this_month",
    "next_month",
    "last_month",
    "this_year",
    "next_year",
    "last_year",
]


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------


class AIUnderstanding(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    detected_language: str = Field(default="", alias="detectedLanguage")
    corrected_typos: list[Any] = Field(default_factory=list, alias="correctedTypos")
    semantic_mappings: dict[str, str] = Field(default_factory=dict, alias="semanticMappings")


class RangeModel(BaseModel):
    start: date | None = None
    end: date | None = None


class SemanticResponse(BaseModel):
    """Structured extraction returned by the language model."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    core_keywords: list[str] = Field(default_factory=list, alias="coreKeywords")
    expanded_keywords: dict[str, dict[str, list[str]]] = Field(
        default_factory=dict, alias="expandedKeywords"
    )
    priority: list[Annotated[int, Field(ge=1, le=4)]] | Literal["any", "none"] | None = None
    status: list[str] | None = None
    due_date: str | None = Field(default=None, alias="dueDate")
    due_date_range: RangeModel | None = Field(default=None, alias="dueDateRange")
    time_context: TimeContext | None = Field(default=None, alias="timeContext")
    folder: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_vague: bool = Field(alias="isVague")
    confidence: float = Field(ge=0.0, le=1.0)
    understanding: AIUnderstanding = Field(
        default_factory=AIUnderstanding, alias="aiUnderstanding"
    )

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, v: Any) -> Any:
        if isinstance(v, (int, str)) and str(v).strip().isdigit():
            return [int(v)]
        if isinstance(v, str):
            return v.strip().lower() or None
        return v

    @field_validator("status", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("due_date", mode="before")
    @classmethod
    def _coerce_due(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        tok = canonical_due_token(str(v))
        if tok is None:
            raise ValueError(f"unrecognized dueDate {v!r}")
        return tok

    @field_validator("time_context", mode="before")
    @classmethod
    def _coerce_time_context(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return re.sub(r"[\s\-]+", "_", str(v).strip().lower())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _balanced_objects(text: str) -> list[str]:
    """Every top-level balanced {...} region, respecting quoted strings."""
    out: list[str] = []
    depth = 0
    start = -1
    in_str = False
    esc = False
    for i, ch in enumerate(text):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                out.append(text[start : i + 1])
    return out


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Pull the response object out of a model reply.

    Reasoning models wrap output in <think>/<reasoning>/<thought> blocks and
    small models add prose or fences around the JSON. Among several balanced
    objects the one carrying expected keys wins.
    """
    if not text:
        return None
    cleaned = _REASONING_RE.sub("", text).strip() or text

    fence = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", cleaned, flags=re.DOTALL)
    candidates = [fence.group(1)] if fence else []
    candidates += _balanced_objects(cleaned)

    parsed: list[dict[str, Any]] = []
    for c in candidates:
        try:
            obj = json.loads(c)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            parsed.append(obj)
    if not parsed:
        return None
    for obj in parsed:
        if any(k in obj for k in _EXPECTED_KEYS):
            return obj
    return parsed[0]


def classify_error(exc: BaseException) -> SemanticFailureKind:
    """Map a transport exception onto the failure taxonomy."""
    if isinstance(exc, (APITimeoutError, asyncio.TimeoutError)):
        return SemanticFailureKind.TIMEOUT
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return SemanticFailureKind.AUTH
    if isinstance(exc, RateLimitError):
        return SemanticFailureKind.RATE_LIMITED
    if isinstance(exc, (BadRequestError, UnprocessableEntityError)):
        if _CTX_OVERFLOW_RE.search(str(exc)):
            return SemanticFailureKind.CONTEXT_TOO_LONG
        return SemanticFailureKind.MALFORMED
    if isinstance(exc, NotFoundError):
        return SemanticFailureKind.MALFORMED
    if isinstance(exc, (InternalServerError, APIStatusError)):
        return SemanticFailureKind.SERVER_ERROR
    if isinstance(exc, APIConnectionError):
        return SemanticFailureKind.CONNECTION_FAILED
    return SemanticFailureKind.SERVER_ERROR


def _typo_pairs(items: list[Any]) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    for it in items:
        if isinstance(it, dict):
            a, b = it.get("from") or it.get("original"), it.get("to") or it.get("corrected")
        elif isinstance(it, (list, tuple)) and len(it) == 2:
            a, b = it
        elif isinstance(it, str):
            parts = re.split(r"\s*(?:->|→|=>)\s*", it, maxsplit=1)
            a, b = (parts[0], parts[1]) if len(parts) == 2 else (None, None)
        else:
            a, b = None, None
        if a and b:
            out.append((str(a), str(b)))
    return out


def _atomic(keyword: str) -> list[str]:
    words = keyword.split()
    if len(words) > _MAX_CORE_WORDS:
        return words
    return [keyword.strip()]


def _lookup_ci(mapping: dict[str, Any], key: str) -> Any:
    if key in mapping:
        return mapping[key]
    low = key.strip().lower()
    for k, v in mapping.items():
        if k.strip().lower() == low:
            return v
    return None


def balance_expansions(
    core_keywords: list[str],
    raw: dict[str, dict[str, list[str]]],
    languages: list[str],
    per_language: int,
) -> dict[str, dict[str, list[str]]]:
    """Give every core keyword exactly ``per_language`` terms in every language.

    Surplus terms are truncated; missing slots are filled with the core
    keyword itself.
    """
    out: dict[str, dict[str, list[str]]] = {}
    for core in core_keywords:
        by_lang = _lookup_ci(raw, core) or {}
        if not isinstance(by_lang, dict):
            by_lang = {}
        out[core] = {}
        for lang in languages:
            terms = _lookup_ci(by_lang, lang) or []
            picked = unique(str(t) for t in terms if isinstance(t, str))[:per_language]
            picked += [core] * (per_language - len(picked))
            out[core][lang] = picked
    return out


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class SemanticParser:
    """One model request per query, validated into a ParsedQuery."""

    def __init__(self, config: ModelConfig, client: Any | None = None):
        self.config = config
        self._client: Any = client or AsyncOpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.request_timeout_s,
            max_retries=0,
        )

    async def parse(
        self, query: str, dictionary: TermDictionary, config: SearchConfig
    ) -> ParsedQuery:
        sys_prompt, few_shot = self._system_prompt(dictionary, config)
        user_prompt = f"Query:\n{query}\n\nReturn the JSON object only."
        try:
            raw = await asyncio.wait_for(
                self._chat_json(sys_prompt, user_prompt, few_shot),
                timeout=config.semantic_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise SemanticParseError(
                SemanticFailureKind.TIMEOUT, f"no response within {config.semantic_timeout_s}s"
            ) from e
        except (APIConnectionError, APIStatusError) as e:
            kind = classify_error(e)
            logger.warning("semantic: request failed (%s): %s", kind.value, e)
            raise SemanticParseError(kind, str(e)) from e
        except Exception as e:
            logger.exception("semantic: unexpected model error")
            raise SemanticParseError(SemanticFailureKind.SERVER_ERROR, str(e)) from e

        data = extract_json_object(raw)
        if data is None:
            raise SemanticParseError(SemanticFailureKind.MALFORMED, "no JSON object in response")
        try:
            resp = SemanticResponse.model_validate(data)
        except ValidationError as e:
            raise SemanticParseError(
                SemanticFailureKind.MALFORMED, f"schema mismatch: {e.error_count()} errors"
            ) from e
        return self.to_parsed_query(resp, dictionary, config)

    def to_parsed_query(
        self, resp: SemanticResponse, dictionary: TermDictionary, config: SearchConfig
    ) -> ParsedQuery:
        drop = dictionary.stop_terms
        core: list[str] = []
        for kw in resp.core_keywords:
            for unit in _atomic(kw):
                if unit.lower() in drop or dictionary.is_property_term(unit):
                    continue
                core.append(unit)
        core = unique(core)

        expansions = balance_expansions(
            core, resp.expanded_keywords, config.languages, config.expansions_per_language
        )
        expanded = [t for per_lang in expansions.values() for ts in per_lang.values() for t in ts]
        keywords = core + [
            t
            for t in unique(expanded)
            if t.lower() not in drop and not dictionary.is_property_term(t)
        ]

        status: list[str] = []
        for s in resp.status or []:
            key = dictionary.resolve_status(s)
            if key is None:
                logger.warning("semantic: dropping unknown status %r", s)
                continue
            status.append(key)

        priority = resp.priority
        if isinstance(priority, list):
            priority = tuple(sorted(set(priority))) or None

        diag = QueryDiagnostics(
            detected_language=resp.understanding.detected_language,
            corrected_typos=_typo_pairs(resp.understanding.corrected_typos),
            semantic_mappings=dict(resp.understanding.semantic_mappings),
        )

        due_date = resp.due_date
        time_context = resp.time_context
        if due_date in _CONTEXT_OF_TOKEN:
            # named periods are time concepts; the normalizer decides their dates
            time_context = time_context or _CONTEXT_OF_TOKEN[due_date]
            diag.notes.append(f"dueDate {due_date!r} reported as timeContext {time_context!r}")
            due_date = None
        due_range: DateRange | None = None
        r = resp.due_date_range
        if r is not None and (r.start is not None or r.end is not None):
            due_range = DateRange(start=r.start, end=r.end)
            if due_range.start and due_range.end and due_range.start > due_range.end:
                diag.notes.append("semantic range was empty; ignored")
                due_range = None
        if due_date and due_range is not None:
            diag.notes.append(f"dueDate {due_date!r} dropped in favour of dueDateRange")
            due_date = None

        return ParsedQuery(
            core_keywords=core,
            keywords=unique(keywords),
            expansions=expansions,
            priority=priority,
            due_date=due_date,
            due_date_range=due_range,
            time_context=time_context,
            status=tuple(unique(status)) or None,
            folder=(resp.folder or "").strip() or None,
            tags=tuple(unique(t.lstrip("#") for t in resp.tags)),
            is_vague=resp.is_vague,
            confidence=resp.confidence,
            diagnostics=diag,
        )

    def _system_prompt(self, dictionary: TermDictionary, config: SearchConfig) -> tuple[str, str]:
        langs = list(config.languages)
        k = config.expansions_per_language
        props = {c: terms[:12] for c, terms in dictionary.property_terms().items()}
        sys_prompt = (
            "You parse task-search queries into JSON for a task manager.\n"
            "Return ONLY one JSON object with keys: coreKeywords (array of strings), "
            "expandedKeywords (object: core keyword -> object: language -> array of strings), "
            "priority (array of integers 1-4, or \"any\", \"none\", or null), "
            "status (array of status category keys or null), "
            "dueDate (\"overdue\", \"future\", \"any\", \"none\", an ISO date, or null), "
            "dueDateRange ({start, end} ISO dates, or null), "
            f"timeContext (one of {', '.join(TIME_CONTEXT_TOKENS)}, or null), "
            "folder (string or null), tags (array), isVague (boolean), "
            "confidence (number 0-1), aiUnderstanding ({detectedLanguage, correctedTypos, "
            "semanticMappings}).\n"
            "Rules:\n"
            "- Silently fix spelling mistakes first; list each fix as \"wrong->right\" in "
            "correctedTypos.\n"
            "- coreKeywords are atomic content units: 1-2 words for space-delimited "
            "languages, 2-3 characters for Chinese/Japanese. Split compound phrases.\n"
            f"- For EVERY core keyword give exactly {k} conceptually equivalent terms in EACH of "
            f"these languages: {', '.join(langs)}. Treat every language equally. Do not just "
            "translate literally.\n"
            "- Priority, status and due-date words are properties, never keywords. Put them "
            "in the structured fields and do not expand them.\n"
            "- Never convert time words into dates. Report them as timeContext only.\n"
            "- isVague is true when the query is mostly generic words (what, should, do, "
            "tasks) with no specific content nouns.\n"
            "- Never include markdown fences.\n\n"
            f"Status category keys: {', '.join(dictionary.status_order)}\n"
            f"Property terms: {json.dumps(props, ensure_ascii=False)}\n"
        )
        example = {
            "coreKeywords": ["payment"],
            "expandedKeywords": {"payment": {lang: ["payment"] * k for lang in langs}},
            "priority": [1],
            "status": None,
            "dueDate": None,
            "dueDateRange": None,
            "timeContext": "this_week",
            "folder": None,
            "tags": [],
            "isVague": False,
            "confidence": 0.9,
            "aiUnderstanding": {
                "detectedLanguage": "English",
                "correctedTypos": ["paymant->payment"],
                "semanticMappings": {"urgent": "priority 1"},
            },
        }
        few_shot = (
            "Example:\n"
            "Query: urgent paymant tasks this week\n"
            "Output shape (terms shortened):\n"
            f"{json.dumps(example, ensure_ascii=False)}"
        )
        return sys_prompt, few_shot

    async def _chat_json(self, sys_prompt: str, user_prompt: str, few_shot: str) -> str:
        messages = [
            {"role": "system", "content": sys_prompt + "\n\n" + few_shot},
            {"role": "user", "content": user_prompt},
        ]

        t0 = asyncio.get_running_loop().time()
        resp = await self._client.chat.completions.create(
            model=self.config.name,
            messages=messages,
            temperature=self.config.temperature,
            max_tokens=self.config.max_output_tokens,
        )
        dt_ms = (asyncio.get_running_loop().time() - t0) * 1000.0

        content = (resp.choices[0].message.content or "").strip()
        logger.debug("semantic: model response (%s ms): %s", int(dt_ms), content[:500])
        return content

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except (APIConnectionError, APIStatusError, asyncio.TimeoutError):
            return False


__all__ = [
    "SemanticParser",
    "SemanticResponse",
    "balance_expansions",
    "classify_error",
    "extract_json_object",
]
