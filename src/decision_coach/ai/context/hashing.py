"""Canonical hashing for context packs and cache keys.

Canonicalisation rules: mapping keys are sorted, ``None`` values are dropped
(absent and ``None`` hash the same), tuples and lists keep their order, and
dataclass-like objects exposing ``to_dict`` are hashed through it. Inputs whose
order is not meaningful are sorted by the caller before hashing (see
:func:`hash_clarification_answers`).
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

__all__ = [
    "SHORT_HASH_LENGTH",
    "RELEVANT_CONFIG_KEYS",
    "CacheBoundary",
    "canonicalize",
    "canonical_json",
    "sha256_hex",
    "compute_hash",
    "compute_string_hash",
    "hash_clarification_answers",
    "hash_config",
    "hash_prompt_content",
    "compute_cache_boundary",
]

SHORT_HASH_LENGTH = 12

# Config keys that influence generated output. Other config never reaches a hash.
RELEVANT_CONFIG_KEYS: tuple[str, ...] = (
    "max_tokens",
    "enforce_single_goal",
    "draft_archetypes_enabled",
    "clarification_enforced",
    "clarifier_enabled",
)


@dataclass(slots=True, frozen=True)
class CacheBoundary:
    """Split cache key: stable prompt/config prefix plus per-request suffix."""

    cache_prefix_key: str
    dynamic_suffix_key: str

    def to_dict(self) -> dict[str, str]:
        return {"cache_prefix_key": self.cache_prefix_key, "dynamic_suffix_key": self.dynamic_suffix_key}


def canonicalize(value: Any) -> Any:
    """Return a JSON-compatible structure with a single canonical shape."""

    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return str(value)
        if value.is_integer():
            return int(value)
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return canonicalize(to_dict())
    if isinstance(value, Mapping):
        return {
            str(key): canonicalize(item)
            for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
            if item is not None
        }
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((canonicalize(item) for item in value), key=lambda item: json.dumps(item, sort_keys=True))
    return str(value)


def canonical_json(value: Any) -> str:
    return json.dumps(canonicalize(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    """Full 64-character SHA-256 digest of ``text``."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_hash(value: Any) -> str:
    """Short content hash of ``value`` after canonicalisation."""

    return sha256_hex(canonical_json(value))[:SHORT_HASH_LENGTH]


def compute_string_hash(text: str) -> str:
    return sha256_hex(text)[:SHORT_HASH_LENGTH]


def hash_clarification_answers(answers: Iterable[Mapping[str, Any]] | None) -> str | None:
    """Hash clarification answers independently of the order they arrived in."""

    items = [dict(answer) for answer in answers or ()]
    if not items:
        return None
    ordered = sorted(items, key=lambda answer: (str(answer.get("question_id", "")), canonical_json(answer)))
    return compute_hash(ordered)


def hash_config(config: Mapping[str, Any] | None, *, extra_keys: Iterable[str] = ()) -> str:
    """Hash the output-relevant subset of ``config``.

    Keys outside :data:`RELEVANT_CONFIG_KEYS` (plus ``extra_keys``) are ignored so
    operational knobs such as timeouts do not bust caches.
    """

    allowed = set(RELEVANT_CONFIG_KEYS) | set(extra_keys)
    subset = {key: value for key, value in (config or {}).items() if key in allowed}
    return compute_hash(subset)


def hash_prompt_content(content: str) -> str:
    return compute_string_hash(content)


def compute_cache_boundary(
    *,
    prompt_hash: str,
    config_hash: str,
    brief_hash: str,
    seed_graph_hash: str | None = None,
    clarification_hash: str | None = None,
    retrieval_hash: str | None = None,
) -> CacheBoundary:
    """Derive the prefix key from prompt and config only, and the suffix from per-request inputs."""

    prefix = compute_hash({"prompt_hash": prompt_hash, "config_hash": config_hash})
    suffix = compute_hash(
        {
            "brief_hash": brief_hash,
            "seed_graph_hash": seed_graph_hash,
            "clarification_hash": clarification_hash,
            "retrieval_hash": retrieval_hash,
        }
    )
    return CacheBoundary(cache_prefix_key=prefix, dynamic_suffix_key=suffix)
