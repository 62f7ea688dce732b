"""
Stdlib text similarity for near-duplicate detection.

Provides normalized text comparison using two complementary measures:
- **Token Jaccard**: set-overlap of word tokens (order-insensitive).
- **SequenceMatcher ratio**: character-level similarity (order-sensitive).

Records are compared on a flattened "key value" rendering of their payload.
Records of different types are never duplicates of each other.
"""

from __future__ import annotations

import re
import string
from difflib import SequenceMatcher
from typing import Any

from docmemory.types import MemoryRecord

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Precompiled translation table: strip all punctuation
_PUNCT_TABLE = str.maketrans("", "", string.punctuation)

# Collapse runs of whitespace
_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Normalize text for similarity comparison.

    Steps:
      1. Lowercase
      2. Strip punctuation
      3. Collapse whitespace
      4. Strip leading/trailing whitespace

    Returns empty string for empty/whitespace-only input.
    """
    text = text.lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into word tokens."""
    if not text:
        return []
    return text.split()


def flatten_payload(data: Any) -> str:
    """Render a nested payload as space-separated ``key value`` text.

    Keys are visited in sorted order so equal payloads render equally.
    """
    parts: list[str] = []

    def _walk(value: Any) -> None:
        if isinstance(value, dict):
            for key in sorted(value, key=str):
                parts.append(str(key))
                _walk(value[key])
        elif isinstance(value, (list, tuple)):
            for item in value:
                _walk(item)
        elif value is not None:
            parts.append(str(value))

    _walk(data)
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Inputs are normalized internally. Returns 1.0 if both are empty
    (vacuous similarity), 0.0 if one is empty and the other is not.
    """
    tokens_a = set(tokenize(normalize(a)))
    tokens_b = set(tokenize(normalize(b)))

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def set_jaccard(a: set, b: set) -> float:
    """Jaccard over arbitrary sets; 0.0 when both are empty."""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def sequence_ratio(a: str, b: str) -> float:
    """Character-level similarity via difflib.SequenceMatcher.

    Returns 1.0 if both are empty, 0.0 if one is empty and the other is not.
    """
    norm_a = normalize(a)
    norm_b = normalize(b)

    if not norm_a and not norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    return SequenceMatcher(None, norm_a, norm_b).ratio()


def similarity(
    a: str,
    b: str,
    *,
    jaccard_weight: float = 0.4,
    sequence_weight: float = 0.6,
) -> float:
    """Combined text similarity score.

    Weighted average of token Jaccard and character-level SequenceMatcher:

        sim = w_j * jaccard(a, b) + w_s * sequence_ratio(a, b)

    Args:
        a: First text.
        b: Second text.
        jaccard_weight: Weight for Jaccard component (default 0.4).
        sequence_weight: Weight for SequenceMatcher component (default 0.6).

    Returns:
        Float in [0.0, 1.0].

    Raises:
        ValueError: If weights are negative or both zero.
    """
    if jaccard_weight < 0 or sequence_weight < 0:
        raise ValueError("Weights must be non-negative")
    total = jaccard_weight + sequence_weight
    if total == 0:
        raise ValueError("At least one weight must be positive")

    j = jaccard(a, b)
    s = sequence_ratio(a, b)
    return (jaccard_weight * j + sequence_weight * s) / total


def record_similarity(a: MemoryRecord, b: MemoryRecord) -> float:
    """Similarity of two records in [0, 1].

    0.0 across types; otherwise the combined text similarity of the
    flattened payloads.
    """
    if a.type != b.type:
        return 0.0
    return similarity(flatten_payload(a.data), flatten_payload(b.data))


def is_duplicate(a: MemoryRecord, b: MemoryRecord, threshold: float) -> bool:
    """True if two records are near-duplicates at the given threshold."""
    return record_similarity(a, b) >= threshold
