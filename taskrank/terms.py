"""Multilingual term dictionary and text helpers.

The dictionary has three layers, consulted in precedence order:

1. user-configured terms
2. built-in multilingual base terms
3. runtime semantic expansions (per query, never persisted)

Property concepts are keyed as ``"<dimension>:<value>"`` (``priority:1``,
``status:open``, ``due:this_week``). ``stop`` and ``generic`` hold
functional words that carry no task-specific content.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property, lru_cache

from taskrank.types import StatusCategory, default_status_categories

_CJK_CHARS = "\u4e00-\u9fff\u3400-\u4dbf\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af"
_CJK_RE = re.compile(f"[{_CJK_CHARS}]")
_WORD_RE = re.compile(rf"[^\W{_CJK_CHARS}]+(?:['\-][^\W{_CJK_CHARS}]+)*")
_TOKEN_RE = re.compile(rf"[{_CJK_CHARS}]+|[^\W{_CJK_CHARS}]+(?:['\-][^\W{_CJK_CHARS}]+)*")


BASE_TERMS: dict[str, list[str]] = {
    # Priority
    "priority": ["priority", "prio", "important", "优先级", "优先", "重要", "prioritet", "viktig"],
    "priority:1": [
        "high priority", "highest priority", "top priority", "urgent", "critical", "asap",
        "高优先级", "最高优先级", "紧急", "非常重要", "hög prioritet", "högsta prioritet",
        "brådskande", "kritisk",
    ],
    "priority:2": [
        "medium priority", "normal priority", "中优先级", "中等优先级",
        "medel prioritet",
    ],
    "priority:3": ["low priority", "minor", "低优先级", "次要", "låg prioritet", "mindre viktig"],
    "priority:4": ["lowest priority", "someday", "最低优先级", "lägsta prioritet"],
    "priority:none": ["no priority", "without priority", "无优先级", "utan prioritet"],
    # Due date
    "due": ["due", "deadline", "截止日期", "截止", "到期", "期限", "förfallodatum"],
    "due:today": ["today", "tonight", "今天", "今日", "idag", "i dag"],
    "due:tomorrow": ["tomorrow", "明天", "明日", "imorgon", "i morgon"],
    "due:yesterday": ["yesterday", "昨天", "igår", "i går"],
    "due:overdue": ["overdue", "over due", "past due", "late", "过期", "逾期", "延迟", "försenad"],
    "due:this_week": ["this week", "本周", "这周", "这个星期", "denna vecka", "den här veckan"],
    "due:next_week": ["next week", "下周", "下个星期", "nästa vecka"],
    "due:last_week": ["last week", "上周", "上个星期", "förra veckan"],
    "due:this_month": ["this month", "本月", "这个月", "denna månad"],
    "due:next_month": ["next month", "下个月", "下月", "nästa månad"],
    "due:last_month": ["last month", "上个月", "上月", "förra månaden"],
    "due:this_year": ["this year", "今年", "i år"],
    "due:next_year": ["next year", "明年", "nästa år"],
    "due:last_year": ["last year", "去年", "förra året"],
    "due:future": ["future", "upcoming", "未来", "将来", "以后", "framtida", "kommande"],
    "due:none": ["no date", "no due date", "without date", "undated", "无日期", "没有日期",
                 "utan datum"],
    # Status
    "status": ["status", "state", "progress", "状态", "进度", "förlopp"],
}

STOP_TERMS: frozenset[str] = frozenset(
    """
    a an the and or but nor so for of to in on at by from with into onto as is are was were
    be been being am it its this that these those there here i me my mine we us our you your
    he she they them their his her all any some each every no not than then too very just
    also only about over under up down out off again once
    的 了 吗 呢 啊 吧 呀 和 与 或 在 是 我 我们 你 你们 他 她 它 这 那 个 些 有 也 都 就 把 被
    och eller men att det den de en ett är var jag mig min du vi som på för med till av
    """.split()
)

GENERIC_TERMS: frozenset[str] = frozenset(
    """
    what which who whom whose when where why how whats
    show list find give get see display tell search look lookup fetch view check
    do does did make need needs needed want wants have has had
    should would could can will shall may might must
    task tasks item items thing things work job jobs stuff issue issues problem problems
    anything something everything one ones
    please now next let i'm i've i'll i'd
    什么 哪些 哪个 怎么 如何 为什么 什么时候 显示 列出 查找 给 看 要 需要 应该 可以 能 做 任务
    事情 事 工作 东西 问题 项目 一下
    vad vilka hur när visa hitta behöver ska bör kan göra uppgift uppgifter saker
    """.split()
)

COMMON_TYPOS: dict[str, str] = {
    "taks": "task",
    "tsak": "task",
    "tasl": "task",
    "tasls": "tasks",
    "priorty": "priority",
    "priortiy": "priority",
    "prioirty": "priority",
    "urgant": "urgent",
    "urgnet": "urgent",
    "tommorow": "tomorrow",
    "tomorow": "tomorrow",
    "tommorrow": "tomorrow",
    "todya": "today",
    "toady": "today",
    "tday": "today",
    "overdu": "overdue",
    "ovedue": "overdue",
    "overdeu": "overdue",
    "complated": "completed",
    "compelted": "completed",
    "completd": "completed",
    "opne": "open",
    "inprogres": "in progress",
    "paymant": "payment",
    "payemnt": "payment",
    "meetign": "meeting",
    "metting": "meeting",
    "projcet": "project",
    "porject": "project",
    "deadlnie": "deadline",
    "deadine": "deadline",
    "wekk": "week",
    "weeek": "week",
    "mnoth": "month",
}


def contains_cjk(text: str) -> bool:
    return bool(_CJK_RE.search(text or ""))


def is_cjk(text: str) -> bool:
    """True when every non-space character is CJK."""
    chars = [c for c in (text or "") if not c.isspace()]
    return bool(chars) and all(_CJK_RE.match(c) for c in chars)


def correct_typos(text: str) -> tuple[str, list[tuple[str, str]]]:
    """Replace known misspellings word by word, preserving everything else."""
    corrections: list[tuple[str, str]] = []

    def repl(m: re.Match[str]) -> str:
        w = m.group(0)
        fixed = COMMON_TYPOS.get(w.lower())
        if fixed is None:
            return w
        corrections.append((w, fixed))
        return fixed

    return _WORD_RE.sub(repl, text or ""), corrections


def _cjk_units(run: str) -> list[str]:
    if len(run) == 1:
        return [run]
    units = [run[i : i + 2] for i in range(len(run) - 1)]
    if 3 <= len(run) <= 4:
        units.insert(0, run)
    return units


def segment_cjk(
    run: str, vocab: frozenset[str] | set[str], max_len: int = 4
) -> list[tuple[str, bool]]:
    """Forward maximum matching of a CJK run against known functional words.

    Returns ``(segment, known)`` pairs; unknown characters are grouped into
    contiguous content segments.
    """
    out: list[tuple[str, bool]] = []
    pending = ""
    i = 0
    while i < len(run):
        hit = ""
        for n in range(min(max_len, len(run) - i), 0, -1):
            if run[i : i + n] in vocab:
                hit = run[i : i + n]
                break
        if hit:
            if pending:
                out.append((pending, False))
                pending = ""
            out.append((hit, True))
            i += len(hit)
        else:
            pending += run[i]
            i += 1
    if pending:
        out.append((pending, False))
    return out


def _strip_clitic(tok: str) -> str:
    # what's -> what, let's -> let
    return tok[:-2] if tok.endswith("'s") and len(tok) > 2 else tok


def tokenize(text: str, vocab: frozenset[str] | set[str] | None = None) -> list[str]:
    """Lowercased word tokens; CJK content becomes 2-character units.

    With ``vocab``, CJK runs are first segmented so known functional words come
    out whole.
    """
    out: list[str] = []
    for m in _TOKEN_RE.finditer((text or "").lower().replace("\u2019", "'")):
        tok = m.group(0)
        if not _CJK_RE.match(tok):
            out.append(_strip_clitic(tok))
        elif vocab:
            for seg, known in segment_cjk(tok, vocab):
                out.extend([seg] if known else _cjk_units(seg))
        else:
            out.extend(_cjk_units(tok))
    return out


def unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for it in items:
        key = it.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(it.strip())
    return out


def dedupe_for_scoring(keywords: Iterable[str]) -> list[str]:
    """Collapse overlapping keyword variants before relevance scoring.

    Exact duplicates are dropped in every script. A CJK keyword contained in a
    longer kept CJK keyword is dropped too; that overlap is a tokenization
    artifact, not an independent hit.
    """
    ordered = sorted(unique(keywords), key=lambda k: len(k), reverse=True)
    kept: list[str] = []
    for kw in ordered:
        low = kw.lower()
        if is_cjk(kw) and any(is_cjk(k) and low in k.lower() for k in kept):
            continue
        kept.append(kw)
    return kept


@lru_cache(maxsize=4096)
def _surface_pattern(surface: str) -> re.Pattern[str]:
    escaped = re.escape(surface.lower()).replace(r"\ ", r"\s+")
    if contains_cjk(surface):
        return re.compile(escaped)
    return re.compile(rf"(?<![\w#:+\-/]){escaped}(?![\w:/])")


def _user_concept(key: str) -> str:
    k = key.strip().lower()
    if k in {"stop", "generic", "priority", "status", "due"}:
        return k
    dim, _, value = k.partition("_")
    return f"{dim}:{value}" if value else dim


@dataclass(frozen=True)
class ConceptMatch:
    concept: str
    surface: str
    start: int
    end: int

    @property
    def dimension(self) -> str:
        return self.concept.split(":", 1)[0]

    @property
    def value(self) -> str:
        return self.concept.split(":", 1)[1] if ":" in self.concept else ""


@dataclass(frozen=True)
class TermDictionary:
    """Immutable three-layer vocabulary. Build one per query."""

    user: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    builtin: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    expansions: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    status_order: tuple[str, ...] = ()
    status_symbols: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        user_terms: Mapping[str, Iterable[str]] | None = None,
        status_categories: list[StatusCategory] | None = None,
    ) -> TermDictionary:
        categories = status_categories or default_status_categories()
        builtin: dict[str, tuple[str, ...]] = {k: tuple(v) for k, v in BASE_TERMS.items()}
        builtin["stop"] = tuple(sorted(STOP_TERMS))
        builtin["generic"] = tuple(sorted(GENERIC_TERMS))
        symbols: dict[str, str] = {}
        for cat in categories:
            if cat.terms:
                forms = [cat.key, cat.key.replace("_", " "), cat.display_name.lower(), *cat.terms]
                builtin[f"status:{cat.key}"] = tuple(unique(forms))
            for sym in cat.symbols:
                symbols[sym] = cat.key
        user: dict[str, tuple[str, ...]] = {}
        for key, forms in (user_terms or {}).items():
            if isinstance(forms, str):
                forms = [forms]
            user[_user_concept(key)] = tuple(unique(str(f) for f in forms))
        order = tuple(c.key for c in sorted(categories, key=lambda c: c.order))
        return cls(user=user, builtin=builtin, status_order=order, status_symbols=symbols)

    def with_expansions(self, expansions: Mapping[str, Iterable[str]]) -> TermDictionary:
        """Return a copy carrying runtime expansions keyed by core keyword."""
        layer = {f"keyword:{core}": tuple(unique(terms)) for core, terms in expansions.items()}
        return TermDictionary(
            user=self.user,
            builtin=self.builtin,
            expansions=layer,
            status_order=self.status_order,
            status_symbols=self.status_symbols,
        )

    # -- lookups -----------------------------------------------------------

    def _layers(self) -> tuple[Mapping[str, tuple[str, ...]], ...]:
        return (self.user, self.builtin, self.expansions)

    def terms(self, concept: str) -> list[str]:
        """Surface forms for a concept across all layers, highest layer first."""
        out: list[str] = []
        for layer in self._layers():
            out.extend(layer.get(concept, ()))
        return unique(out)

    @cached_property
    def surface_index(self) -> dict[str, str]:
        """Map each lowercased surface form to its owning concept.

        A form claimed by several layers belongs to the highest-precedence one.
        """
        idx: dict[str, str] = {}
        for layer in reversed(self._layers()):
            for concept, forms in layer.items():
                for f in forms:
                    idx[f.lower()] = concept
        return idx

    def concept_of(self, term: str) -> str | None:
        return self.surface_index.get((term or "").strip().lower())

    @cached_property
    def stop_terms(self) -> frozenset[str]:
        return frozenset(t.lower() for t in self.terms("stop"))

    @cached_property
    def generic_terms(self) -> frozenset[str]:
        return frozenset(t.lower() for t in self.terms("generic"))

    def is_property_term(self, term: str) -> bool:
        c = self.concept_of(term)
        return c is not None and c.split(":", 1)[0] in {"priority", "status", "due"}

    def property_terms(self) -> dict[str, list[str]]:
        """Every property concept with its surface forms."""
        concepts = {
            c
            for layer in (self.user, self.builtin)
            for c in layer
            if c.split(":", 1)[0] in {"priority", "status", "due"}
        }
        return {c: self.terms(c) for c in sorted(concepts)}

    def find_concepts(
        self,
        text: str,
        dimensions: Iterable[str] | None = None,
        include_general: bool = False,
    ) -> list[ConceptMatch]:
        """Find non-overlapping property concepts in text, longest forms first.

        General words ("priority", "due") are only returned with
        ``include_general``; their match value is empty.
        """
        dims = set(dimensions) if dimensions is not None else {"priority", "status", "due"}
        low = (text or "").lower()
        candidates: list[tuple[str, str]] = [
            (surface, concept)
            for surface, concept in self.surface_index.items()
            if concept.split(":", 1)[0] in dims and (include_general or ":" in concept)
        ]
        candidates.sort(key=lambda sc: (-len(sc[0]), sc[0]))
        taken: list[tuple[int, int]] = []
        found: list[ConceptMatch] = []
        for surface, concept in candidates:
            for m in _surface_pattern(surface).finditer(low):
                s, e = m.span()
                if any(s < te and ts < e for ts, te in taken):
                    continue
                taken.append((s, e))
                found.append(ConceptMatch(concept=concept, surface=surface, start=s, end=e))
        found.sort(key=lambda cm: cm.start)
        return found

    def resolve_status(self, value: str) -> str | None:
        """Map a status value (key, term or symbol) to a category key."""
        raw = value or ""
        if raw in self.status_symbols:
            return self.status_symbols[raw]
        v = raw.strip().lower().replace("-", "_")
        if not v:
            return None
        if v in self.status_order:
            return v
        concept = self.concept_of(v.replace("_", " ")) or self.concept_of(raw.strip())
        if concept and concept.startswith("status:"):
            return concept.split(":", 1)[1]
        return None

    def status_category(self, status: str) -> str:
        """Category key for a task status; unknown values map to ``other``."""
        key = self.resolve_status(status)
        if key is None:
            return "other" if "other" in self.status_order else status
        return key

    def status_rank(self, status: str) -> int:
        key = self.status_category(status)
        try:
            return self.status_order.index(key)
        except ValueError:
            return len(self.status_order)

    def core_for(self, term: str) -> str | None:
        """Core keyword that a runtime expansion term belongs to."""
        low = (term or "").strip().lower()
        for concept, forms in self.expansions.items():
            core = concept.split(":", 1)[1]
            if low == core.lower() or low in (f.lower() for f in forms):
                return core
        return None
