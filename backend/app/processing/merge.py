"""
Result Merger — fold per-unit AnalysisRecords into one document verdict.

Field families (every schema field belongs to exactly one):

  severity     risk_rating, enforceability_decision
               most severe value wins by a fixed priority list; values are
               matched case-insensitively and emitted in canonical form;
               unlisted values rank below everything listed
  yes-flags    adverse-entry style fields
               any value starting with "yes" wins over no/unknown; distinct
               yes texts from several units are joined with "; "
  narrative    address, rationale, actions, advocate remarks
               "; "-joined across units, skipping placeholders and repeats
  identity     applicant no, borrower, type, state, dates, statuses …
               first non-placeholder value in unit order wins

confidence_score is the arithmetic mean of the numeric unit scores.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from app.schemas.records import (
    MANUAL_REVIEW,
    UNKNOWN,
    AnalysisRecord,
    SCHEMA_FIELDS,
    is_placeholder,
)

logger = logging.getLogger(__name__)

SEPARATOR = "; "

# Most severe first
RISK_PRIORITY: tuple[str, ...] = ("High", "Medium", "Low", MANUAL_REVIEW, UNKNOWN)
ENFORCEABILITY_PRIORITY: tuple[str, ...] = (
    "Not Enforceable",
    "Enforceable with Conditions",
    "Enforceable",
    MANUAL_REVIEW,
    UNKNOWN,
)

SEVERITY_FIELDS: dict[str, tuple[str, ...]] = {
    "risk_rating":             RISK_PRIORITY,
    "enforceability_decision": ENFORCEABILITY_PRIORITY,
}

YES_FLAG_FIELDS: tuple[str, ...] = (
    "encumbrances_adverse_entries",
    "subsequent_charges",
    "prior_charge_subsisting",
    "litigation_lis_pendens",
    "stamping_registration_issues",
    "mortgage_perfection_issues",
)

NARRATIVE_FIELDS: tuple[str, ...] = (
    "property_address",
    "enforceability_rationale",
    "recommended_actions",
    "advocate_adverse_remarks",
)

IDENTITY_FIELDS: tuple[str, ...] = tuple(
    name for name in SCHEMA_FIELDS
    if name not in SEVERITY_FIELDS
    and name not in YES_FLAG_FIELDS
    and name not in NARRATIVE_FIELDS
)


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

def severity_rank(value: str, priority: Sequence[str]) -> int:
    """Index in the priority list (0 = most severe); unlisted values rank last."""
    needle = value.strip().lower()
    for rank, candidate in enumerate(priority):
        if candidate.lower() == needle:
            return rank
    return len(priority)


def merge_severity(values: Iterable[str], priority: Sequence[str]) -> str:
    best: str | None = None
    best_rank = len(priority) + 1
    for value in values:
        rank = severity_rank(value, priority)
        if rank < best_rank:
            best, best_rank = value, rank
    if best is None:
        return UNKNOWN
    return priority[best_rank] if best_rank < len(priority) else best


def merge_yes_flag(values: Sequence[str]) -> str:
    yes_values = _distinct(v for v in values if v.strip().lower().startswith("yes"))
    if yes_values:
        return SEPARATOR.join(yes_values)
    return merge_first_valid(values)


def merge_narrative(values: Iterable[str]) -> str:
    segments: list[str] = []
    for value in values:
        if is_placeholder(value):
            continue
        for segment in value.split(SEPARATOR):
            segment = segment.strip()
            if segment and segment not in segments and not is_placeholder(segment):
                segments.append(segment)
    return SEPARATOR.join(segments) if segments else UNKNOWN


def merge_first_valid(values: Sequence[str]) -> str:
    for value in values:
        if not is_placeholder(value):
            return value
    return values[0] if values else UNKNOWN


def mean_confidence(records: Sequence[AnalysisRecord]) -> float | None:
    scores = [r.confidence_score for r in records if r.confidence_score is not None]
    if not scores:
        return None
    return round(sum(scores) / len(scores), 2)


def _distinct(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        value = value.strip()
        if value not in seen:
            seen.append(value)
    return seen


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def merge_records(records: Sequence[AnalysisRecord | None]) -> AnalysisRecord | None:
    """Merge unit records in split order. Empty → None; singleton → unchanged."""
    valid = [r for r in records if r is not None]
    if not valid:
        return None
    if len(valid) == 1:
        return valid[0]

    merged: dict[str, object] = {}
    for name in SCHEMA_FIELDS:
        values = [getattr(r, name) for r in valid]
        if name in SEVERITY_FIELDS:
            merged[name] = merge_severity(values, SEVERITY_FIELDS[name])
        elif name in YES_FLAG_FIELDS:
            merged[name] = merge_yes_flag(values)
        elif name in NARRATIVE_FIELDS:
            merged[name] = merge_narrative(values)
        else:
            merged[name] = merge_first_valid(values)

    result = valid[0].model_copy(update={
        **merged,
        "confidence_score": mean_confidence(valid),
        "tokens_input":     sum(r.tokens_input for r in valid),
        "tokens_output":    sum(r.tokens_output for r in valid),
        "chunked":          True,
        "chunks_processed": len(valid),
    })

    logger.info(
        "Merge | units=%d risk=%s enforceability=%s confidence=%s",
        len(valid), result.risk_rating, result.enforceability_decision,
        result.confidence_score,
    )
    return result
