"""Science ledger: which grounded claims a reply used and how it phrased them."""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from .types import ScienceLedger

__all__ = ["build_science_ledger", "find_phrasing_violations", "find_ungrounded_percentages"]

_PERCENT = re.compile(r"(?<![\w.])\d{1,3}(?:\.\d+)?%")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_COUNTERFACTUAL = re.compile(r"\b(?:if you (?:had|choose|chose|pick|go with)|would have|will (?:lead|result|cause))\b", re.IGNORECASE)
_QUALIFIER = re.compile(r"\b(?:under this model|in this model|the model (?:suggests|estimates|shows)|according to the analysis)\b", re.IGNORECASE)
_CERTAINTY = re.compile(r"\b(?:guaranteed?|definitely|certainly|undoubtedly|proves?|without (?:a )?doubt|100% (?:sure|certain))\b", re.IGNORECASE)


def find_ungrounded_percentages(text: str, canonical_state: str) -> tuple[str, ...]:
    """Percentages in ``text`` that never appear in the rendered canonical state."""

    grounded = set(_PERCENT.findall(canonical_state or ""))
    found: dict[str, None] = {}
    for value in _PERCENT.findall(text or ""):
        if value not in grounded:
            found.setdefault(value, None)
    return tuple(found)


def find_phrasing_violations(text: str) -> tuple[str, ...]:
    violations: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(text or ""):
        stripped = sentence.strip()
        if not stripped:
            continue
        certainty = _CERTAINTY.search(stripped)
        if certainty:
            violations.append(f"certainty:{certainty.group(0).lower()}")
        if _COUNTERFACTUAL.search(stripped) and not _QUALIFIER.search(stripped):
            violations.append(f"unqualified_counterfactual:{stripped[:80]}")
    return tuple(dict.fromkeys(violations))


def build_science_ledger(
    *,
    assistant_text: str,
    cited_fact_ids: Sequence[str],
    known_fact_ids: Iterable[str],
    canonical_state: str,
    techniques: Sequence[str] = (),
) -> ScienceLedger:
    """Compare what the reply cites and claims against the canonical state."""

    known = set(known_fact_ids)
    claims = tuple(fact for fact in cited_fact_ids if fact in known)
    scope = [f"unknown_fact:{fact}" for fact in cited_fact_ids if fact not in known]
    scope.extend(f"ungrounded_value:{value}" for value in find_ungrounded_percentages(assistant_text, canonical_state))
    return ScienceLedger(
        claims_used=claims,
        techniques_used=tuple(dict.fromkeys(techniques)),
        scope_violations=tuple(scope),
        phrasing_violations=find_phrasing_violations(assistant_text),
    )
