from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from taskrank.terms import GENERIC_TERMS, tokenize


@dataclass(frozen=True)
class Vagueness:
    is_vague: bool
    confidence: float
    generic_terms: tuple[str, ...] = ()
    content_terms: tuple[str, ...] = ()

    @property
    def generic_ratio(self) -> float:
        n = len(self.generic_terms) + len(self.content_terms)
        return len(self.generic_terms) / n if n else 0.0


def is_vague_query(
    text: str,
    stop_terms: Iterable[str],
    generic_terms: Iterable[str] = GENERIC_TERMS,
    *,
    threshold: float = 0.6,
    explicit_syntax: bool = False,
) -> Vagueness:
    """Classify a query as vague when generic words dominate its content.

    ``text`` should already have property syntax and property terms removed.
    Stop words are ignored; the generic ratio is taken over the remaining
    tokens. Queries written with explicit filter syntax are never vague.
    """
    stop = {s.lower() for s in stop_terms}
    generic = {g.lower() for g in generic_terms}
    tokens = tokenize(text, vocab=frozenset(stop | generic))

    gen: list[str] = []
    content: list[str] = []
    for tok in tokens:
        if tok in stop:
            continue
        (gen if tok in generic else content).append(tok)

    if explicit_syntax or not gen:
        return Vagueness(False, 1.0, tuple(gen), tuple(content))

    ratio = len(gen) / (len(gen) + len(content))
    if ratio >= threshold:
        return Vagueness(True, round(ratio, 4), tuple(gen), tuple(content))
    return Vagueness(False, round(1.0 - ratio, 4), tuple(gen), tuple(content))
