from __future__ import annotations

import asyncio
import json
from datetime import date
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from openai import (
    APIConnectionError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    RateLimitError,
)

from taskrank.semantic import (
    SemanticParser,
    balance_expansions,
    classify_error,
    extract_json_object,
)
from taskrank.terms import TermDictionary
from taskrank.types import (
    DateRange,
    ModelConfig,
    SearchConfig,
    SemanticFailureKind,
    SemanticParseError,
)

_REQ = httpx.Request("POST", "http://localhost:1234/v1/chat/completions")


class _StubCompletions:
    def __init__(self, content: str = "", exc: Exception | None = None, delay: float = 0.0):
        self.content = content
        self.exc = exc
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        msg = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)])


def _mk_parser(completions: _StubCompletions) -> SemanticParser:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return SemanticParser(ModelConfig(name="stub"), client=client)


def _mk_cfg(**kw: Any) -> SearchConfig:
    base: dict[str, Any] = {"languages": ["English", "中文"], "expansions_per_language": 3}
    base.update(kw)
    return SearchConfig(**base)


def _status_exc(cls: type, code: int, message: str = "boom") -> Exception:
    return cls(message, response=httpx.Response(code, request=_REQ), body=None)


def _response(**overrides: Any) -> str:
    data: dict[str, Any] = {
        "coreKeywords": ["urgent", "payment"],
        "expandedKeywords": {
            "payment": {
                "English": ["payment", "billing", "invoice", "charge"],
                "中文": ["付款", "支付"],
            }
        },
        "priority": [1],
        "status": ["todo"],
        "dueDate": None,
        "timeContext": "this week",
        "isVague": False,
        "confidence": 0.9,
        "aiUnderstanding": {
            "detectedLanguage": "English",
            "correctedTypos": ["paymant->payment"],
            "semanticMappings": {"urgent": "priority 1"},
        },
    }
    data.update(overrides)
    return json.dumps(data, ensure_ascii=False)


@pytest.mark.asyncio
async def test_parse_validates_and_balances_expansions() -> None:
    comp = _StubCompletions(_response())
    d = TermDictionary.build()
    pq = await _mk_parser(comp).parse("urgent paymant this week", d, _mk_cfg())

    # property words are never content keywords
    assert pq.core_keywords == ["payment"]
    assert pq.priority == (1,)
    assert pq.status == ("open",)
    assert pq.time_context == "this_week"
    assert pq.due_date is None
    per_lang = pq.expansions["payment"]
    assert set(per_lang) == {"English", "中文"}
    assert all(len(v) == 3 for v in per_lang.values())
    assert "invoice" in pq.keywords and "付款" in pq.keywords
    assert ("paymant", "payment") in pq.diagnostics.corrected_typos
    assert len(comp.calls) == 1
    assert comp.calls[0]["model"] == "stub"


@pytest.mark.asyncio
async def test_range_wins_over_due_date() -> None:
    content = _response(
        dueDate="2026-10-03", dueDateRange={"start": "2026-10-01", "end": "2026-10-05"}
    )
    pq = await _mk_parser(_StubCompletions(content)).parse("x", TermDictionary.build(), _mk_cfg())
    assert pq.due_date is None
    assert pq.due_date_range == DateRange(date(2026, 10, 1), date(2026, 10, 5))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "due,context",
    [("today", "today"), ("next-week", "next_week"), ("month", "this_month")],
)
async def test_named_due_periods_become_time_context(due: str, context: str) -> None:
    content = _response(dueDate=due, timeContext=None)
    pq = await _mk_parser(_StubCompletions(content)).parse("x", TermDictionary.build(), _mk_cfg())
    assert pq.due_date is None
    assert pq.time_context == context


@pytest.mark.asyncio
async def test_concrete_due_values_stay_due_dates() -> None:
    d = TermDictionary.build()
    for due in ("overdue", "2026-10-20", "+3d"):
        pq = await _mk_parser(_StubCompletions(_response(dueDate=due, timeContext=None))).parse(
            "x", d, _mk_cfg()
        )
        assert pq.due_date == due
        assert pq.time_context is None


@pytest.mark.parametrize(
    "content",
    [
        "Sorry, I cannot help with that.",
        _response(isVague=None),
        _response(confidence=1.5),
        _response(priority=[7]),
        _response(dueDate="whenever"),
        json.dumps({"coreKeywords": ["x"]}),
    ],
)
@pytest.mark.asyncio
async def test_schema_violations_are_malformed(content: str) -> None:
    parser = _mk_parser(_StubCompletions(content))
    with pytest.raises(SemanticParseError) as ei:
        await parser.parse("x", TermDictionary.build(), _mk_cfg())
    assert ei.value.kind is SemanticFailureKind.MALFORMED
    assert ei.value.recoverable


@pytest.mark.asyncio
async def test_slow_model_times_out() -> None:
    parser = _mk_parser(_StubCompletions(_response(), delay=1.0))
    with pytest.raises(SemanticParseError) as ei:
        await parser.parse("x", TermDictionary.build(), _mk_cfg(semantic_timeout_s=0.01))
    assert ei.value.kind is SemanticFailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_transport_errors_are_classified() -> None:
    parser = _mk_parser(_StubCompletions(exc=_status_exc(RateLimitError, 429)))
    with pytest.raises(SemanticParseError) as ei:
        await parser.parse("x", TermDictionary.build(), _mk_cfg())
    assert ei.value.kind is SemanticFailureKind.RATE_LIMITED


@pytest.mark.parametrize(
    "exc,kind",
    [
        (_status_exc(AuthenticationError, 401), SemanticFailureKind.AUTH),
        (_status_exc(RateLimitError, 429), SemanticFailureKind.RATE_LIMITED),
        (
            _status_exc(BadRequestError, 400, "This model's maximum context length is 4096"),
            SemanticFailureKind.CONTEXT_TOO_LONG,
        ),
        (_status_exc(BadRequestError, 400, "bad field"), SemanticFailureKind.MALFORMED),
        (_status_exc(InternalServerError, 500), SemanticFailureKind.SERVER_ERROR),
        (APIConnectionError(request=_REQ), SemanticFailureKind.CONNECTION_FAILED),
        (APITimeoutError(request=_REQ), SemanticFailureKind.TIMEOUT),
    ],
)
def test_classify_error(exc: Exception, kind: SemanticFailureKind) -> None:
    assert classify_error(exc) is kind


def test_extract_json_object_skips_reasoning_and_prose() -> None:
    text = (
        '<think>maybe {"draft": true}</think>\n'
        "Here you go:\n```json\n"
        '{"coreKeywords": ["report"], "isVague": false, "confidence": 0.8}\n```'
    )
    obj = extract_json_object(text)
    assert obj is not None
    assert obj["coreKeywords"] == ["report"]
    assert extract_json_object("no json here") is None


def test_extract_json_object_prefers_expected_keys() -> None:
    text = '{"note": "x"} then {"isVague": true, "confidence": 1, "coreKeywords": []}'
    obj = extract_json_object(text)
    assert obj is not None and obj["isVague"] is True


@pytest.mark.parametrize("languages", [["English"], ["English", "中文"],
                                       ["English", "中文", "Svenska"],
                                       ["English", "中文", "Svenska", "Deutsch"]])
@pytest.mark.parametrize("k", [1, 3, 5])
def test_expansion_symmetry(languages: list[str], k: int) -> None:
    raw = {
        "bug": {
            "english": ["bug", "defect", "error", "fault", "issue", "glitch"],
            "中文": ["错误"],
        },
        "login": {},
    }
    out = balance_expansions(["bug", "login"], raw, languages, k)
    for core in ("bug", "login"):
        assert set(out[core]) == set(languages)
        assert all(len(terms) == k for terms in out[core].values())
        assert sum(len(t) for t in out[core].values()) == k * len(languages)
    assert out["bug"]["English"][0] == "bug"
    assert out["login"]["English"] == ["login"] * k


class _StubModels:
    def __init__(self, exc: Exception | None = None):
        self.exc = exc

    async def list(self):
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(data=[])


@pytest.mark.asyncio
async def test_health_check_reports_reachability() -> None:
    up = SimpleNamespace(models=_StubModels())
    down = SimpleNamespace(models=_StubModels(APIConnectionError(request=_REQ)))
    assert await SemanticParser(ModelConfig(name="stub"), client=up).health_check()
    assert not await SemanticParser(ModelConfig(name="stub"), client=down).health_check()
