"""Duplicate segment removal.

Two methods are supported:
- ``hash``: exact match of the normalized content (xxhash digest)
- ``similarity``: Jaccard similarity of word sets at or above a threshold

Similarity mode compares an item only with the last ``max_comparisons``
kept items (default 100). An earlier near-duplicate outside that window is
not detected; set ``max_comparisons`` to ``None`` to compare with every kept
item.

The first occurrence of a duplicate group is kept; input order is preserved.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any

import xxhash

from pyconveyor.steps.base import Item, Step, StepContext, StepResult, item_text

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w+")

_DEFAULT_MAX_COMPARISONS = 100


def normalize_content(
    content: str,
    case_sensitive: bool = False,
    ignore_whitespace: bool = True,
    normalize_text: bool = True,
) -> str:
    normalized = content
    if normalize_text:
        normalized = unicodedata.normalize("NFD", normalized)
    if ignore_whitespace:
        normalized = _WHITESPACE.sub(" ", normalized).strip()
    if not case_sensitive:
        normalized = normalized.lower()
    return normalized


def jaccard(left: set[str], right: set[str]) -> float:
    if not left and not right:
        return 1.0
    return len(left & right) / len(left | right)


class DuplicateSegmentStep(Step):
    step_type = "duplicate_segment"
    name = "Duplicate Segment Detection"
    description = "Remove segments whose content duplicates an earlier segment"

    def validate(self, config: dict[str, Any]) -> list[str]:
        errors = []
        method = config.get("method", "hash")
        if method not in ("hash", "similarity"):
            errors.append(f"Unknown method {method!r}; expected 'hash' or 'similarity'")
        threshold = config.get("similarity_threshold", 0.8)
        try:
            if not 0 <= float(threshold) <= 1:
                errors.append(f"similarity_threshold must be within [0, 1], got {threshold}")
        except (TypeError, ValueError):
            errors.append(f"similarity_threshold must be a number, got {threshold!r}")
        max_comparisons = config.get("max_comparisons", _DEFAULT_MAX_COMPARISONS)
        if max_comparisons is not None and (
            not isinstance(max_comparisons, int) or max_comparisons < 1
        ):
            errors.append(
                f"max_comparisons must be a positive integer or None, got {max_comparisons!r}"
            )
        return errors

    async def execute(self, items: list[Item], context: StepContext) -> StepResult:
        config = context.config
        method = config.get("method", "hash")
        field_name = config.get("content_field", "content")
        threshold = min(1.0, max(0.0, float(config.get("similarity_threshold", 0.8))))
        max_comparisons = config.get("max_comparisons", _DEFAULT_MAX_COMPARISONS)
        if max_comparisons is not None:
            max_comparisons = max(1, int(max_comparisons))
        options = {
            "case_sensitive": bool(config.get("case_sensitive", False)),
            "ignore_whitespace": bool(config.get("ignore_whitespace", True)),
            "normalize_text": bool(config.get("normalize_text", True)),
        }

        seen_hashes: set[str] = set()
        seen_words: list[set[str]] = []
        unique: list[Item] = []

        for item in items:
            normalized = normalize_content(item_text(item, field_name), **options)
            if method == "similarity":
                words = set(_WORD.findall(normalized))
                recent = seen_words if max_comparisons is None else seen_words[-max_comparisons:]
                if any(jaccard(words, other) >= threshold for other in recent):
                    continue
                seen_words.append(words)
            else:
                digest = xxhash.xxh3_64(normalized.encode("utf-8")).hexdigest()
                if digest in seen_hashes:
                    continue
                seen_hashes.add(digest)
            unique.append(item)

        removed = len(items) - len(unique)
        logger.debug(
            f"Execution {context.execution_id} node {context.node_id}: "
            f"{removed} duplicate(s) removed of {len(items)}"
        )
        return StepResult(
            items=unique,
            metrics={
                "inputCount": len(items),
                "outputCount": len(unique),
                "duplicatesRemoved": removed,
                "method": method,
            },
        )
