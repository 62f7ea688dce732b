"""
Retention Governance — Preservation Rules and Importance Scoring

Decides which records the maintenance engine may touch. Two levels:
- Hard exemptions: preserve patterns (matched against type, tags and payload)
  and success/critical flags in the payload. Exempt records are never evicted.
- Soft ranking: an importance score in [0, 1] ordering size-based eviction.
  Records above the configured importance ceiling are kept as well.

Policy updates are merged and validated as a whole; a violating update is
rejected and the previous policy remains in force.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from docmemory.config import PolicyLimits, PruningPolicy
from docmemory.errors import ValidationError
from docmemory.types import MemoryRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


@dataclass
class PreservationVerdict:
    """Result of evaluating preservation rules on a record."""

    preserved: bool = False
    reasons: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Scoring tables
# ---------------------------------------------------------------------------

# Per-type contribution to importance (0-0.2)
_TYPE_SCORES: Dict[str, float] = {
    "successful_deployment": 0.2,
    "user_preference": 0.18,
    "configuration": 0.15,
    "deployment": 0.14,
    "analysis": 0.12,
    "recommendation": 0.12,
    "interaction": 0.08,
    "error": 0.05,
}
_DEFAULT_TYPE_SCORE = 0.05

# Age at which recency contributes nothing
_RECENCY_HORIZON_DAYS = 180.0


def _pattern_matches(pattern: str, haystacks: List[str]) -> bool:
    """Glob match when the pattern has wildcards, substring match otherwise."""
    is_glob = any(ch in pattern for ch in "*?[")
    for text in haystacks:
        if is_glob:
            if fnmatch.fnmatchcase(text, pattern):
                return True
        elif pattern in text:
            return True
    return False


def evaluate_preservation(
    record: MemoryRecord, patterns: List[str],
) -> PreservationVerdict:
    """Evaluate preservation rules for a single record."""
    verdict = PreservationVerdict()
    haystacks = [record.type, *record.tags,
                 json.dumps(record.data, sort_keys=True, default=str)]
    for pattern in patterns:
        if _pattern_matches(pattern, haystacks):
            verdict.reasons.append(f"pattern:{pattern}")

    data = record.data if isinstance(record.data, dict) else {}
    if data.get("outcome") == "success":
        verdict.reasons.append("outcome:success")
    if data.get("success") is True:
        verdict.reasons.append("flag:success")
    if data.get("critical") is True:
        verdict.reasons.append("flag:critical")

    verdict.preserved = bool(verdict.reasons)
    return verdict


def is_preserved(record: MemoryRecord, patterns: List[str]) -> bool:
    """True if the record is exempt from every kind of eviction."""
    return evaluate_preservation(record, patterns).preserved


def importance_score(
    record: MemoryRecord,
    *,
    connections: int = 0,
    now: Optional[datetime] = None,
) -> float:
    """Score a record in [0, 1]; lower scores are evicted first.

    Components: recency (0-0.3), type (0-0.2), graph centrality (0-0.15)
    and success indicator (0-0.15).
    """
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - record.created).total_seconds() / 86400.0)
    score = max(0.0, 1.0 - age_days / _RECENCY_HORIZON_DAYS) * 0.3

    score += _TYPE_SCORES.get(record.type, _DEFAULT_TYPE_SCORE)
    score += min(0.15, connections * 0.02)

    data = record.data if isinstance(record.data, dict) else {}
    if data.get("outcome") == "success" or data.get("success") is True:
        score += 0.15

    return min(1.0, score)


# ---------------------------------------------------------------------------
# Policy updates
# ---------------------------------------------------------------------------


def merge_policy(
    current: PruningPolicy,
    partial: Dict[str, Any],
    limits: Optional[PolicyLimits] = None,
) -> PruningPolicy:
    """Merge a partial update into a policy and validate the result.

    Raises:
        ValidationError: On unknown fields or any invariant violation.
            The current policy object is never modified.
    """
    known = set(PruningPolicy.__dataclass_fields__.keys())
    unknown = sorted(set(partial) - known)
    if unknown:
        raise ValidationError(f"Unknown policy field(s): {', '.join(unknown)}")

    candidate = replace(current, **partial)
    if "preserve_patterns" in partial and isinstance(partial["preserve_patterns"], list):
        candidate.preserve_patterns = list(partial["preserve_patterns"])
    errors = candidate.validate(limits)
    if errors:
        logger.warning(f"Policy update rejected: {'; '.join(errors)}")
        raise ValidationError(f"Invalid policy: {'; '.join(errors)}")
    return candidate
