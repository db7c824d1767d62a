"""
Analysis record — fixed, versioned field schema for one legal-audit verdict.

One AnalysisRecord is produced per analyzed unit (whole document, text chunk
or page batch); the Result Merger folds a document's unit records into one
merged record of the same type. Downstream merge and report logic depend on
the exact field names below, so the schema is closed (unknown keys from the
AI service are dropped) and versioned via `_schema_version`.

Serialized shape (by alias):
  {
    "appl_no": "...", ..., "recommended_actions": "...",
    "confidence_score": 85.0,
    "document_name": "tsr_001.pdf", "processed_at": "2026-...Z",
    "_tokens_input": 1200, "_tokens_output": 400,
    "_chunked": true, "_chunks_processed": 3, "_chunks_failed": 0,
    "_processing_strategy": "page-split", "_schema_version": 1
  }
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

SCHEMA_VERSION = 1

UNKNOWN = "Unknown"
NOT_IN_SECTION = "Not in this section"
MANUAL_REVIEW = "Manual Review Required"

# Values that carry no information and never win a merge
PLACEHOLDER_VALUES: frozenset[str] = frozenset({UNKNOWN.lower(), NOT_IN_SECTION.lower(), ""})

# The 22 free-form string fields requested from the AI service, in report order
SCHEMA_FIELDS: tuple[str, ...] = (
    "appl_no",
    "borrower_name",
    "property_address",
    "property_type",
    "state",
    "tsr_date",
    "ownership_title_chain_status",
    "encumbrances_adverse_entries",
    "subsequent_charges",
    "prior_charge_subsisting",
    "roc_charge_flag",
    "litigation_lis_pendens",
    "mutation_status",
    "revenue_municipal_dues",
    "land_use_zoning_status",
    "stamping_registration_issues",
    "mortgage_perfection_issues",
    "advocate_adverse_remarks",
    "risk_rating",
    "enforceability_decision",
    "enforceability_rationale",
    "recommended_actions",
)


def is_placeholder(value: Any) -> bool:
    """True for None, empty strings, "Unknown" and "Not in this section"."""
    if value is None:
        return True
    return str(value).strip().lower() in PLACEHOLDER_VALUES


def _coerce_score(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return None


class AnalysisRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # --- Extracted fields ---
    appl_no:                      str = UNKNOWN
    borrower_name:                str = UNKNOWN
    property_address:             str = UNKNOWN
    property_type:                str = UNKNOWN
    state:                        str = UNKNOWN
    tsr_date:                     str = UNKNOWN
    ownership_title_chain_status: str = UNKNOWN
    encumbrances_adverse_entries: str = UNKNOWN
    subsequent_charges:           str = UNKNOWN
    prior_charge_subsisting:      str = UNKNOWN
    roc_charge_flag:              str = UNKNOWN
    litigation_lis_pendens:       str = UNKNOWN
    mutation_status:              str = UNKNOWN
    revenue_municipal_dues:       str = UNKNOWN
    land_use_zoning_status:       str = UNKNOWN
    stamping_registration_issues: str = UNKNOWN
    mortgage_perfection_issues:   str = UNKNOWN
    advocate_adverse_remarks:     str = UNKNOWN
    risk_rating:                  str = UNKNOWN
    enforceability_decision:      str = UNKNOWN
    enforceability_rationale:     str = UNKNOWN
    recommended_actions:          str = UNKNOWN
    confidence_score:             float | None = None

    # --- Provenance ---
    document_name:       str | None      = None
    processed_at:        datetime | None = None
    tokens_input:        int             = Field(0, alias="_tokens_input")
    tokens_output:       int             = Field(0, alias="_tokens_output")
    chunked:             bool            = Field(False, alias="_chunked")
    chunks_processed:    int             = Field(1, alias="_chunks_processed")
    chunks_failed:       int             = Field(0, alias="_chunks_failed")
    processing_strategy: str | None      = Field(None, alias="_processing_strategy")
    failure_reason:      str | None      = Field(None, alias="_failure_reason")
    schema_version:      int             = Field(SCHEMA_VERSION, alias="_schema_version")

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, data: Any) -> Any:
        """AI output is loosely typed: nulls, numbers and lists in string slots."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for name in SCHEMA_FIELDS:
            value = data.get(name)
            if value is None:
                data.pop(name, None)
            elif isinstance(value, list):
                data[name] = "; ".join(str(v) for v in value if v is not None) or UNKNOWN
            elif not isinstance(value, str):
                data[name] = str(value)
        if "confidence_score" in data:
            data["confidence_score"] = _coerce_score(data["confidence_score"])
        return data

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AnalysisRecord":
        """Build from a parsed AI response, dropping any provenance it claims."""
        clean = {k: v for k, v in payload.items() if not str(k).startswith("_")}
        clean.pop("document_name", None)
        clean.pop("processed_at", None)
        return cls.model_validate(clean)

    @classmethod
    def placeholder(cls, document_name: str, reason: str) -> "AnalysisRecord":
        """Row for a document that could not be analyzed."""
        return cls(
            document_name=document_name,
            risk_rating=MANUAL_REVIEW,
            enforceability_decision=MANUAL_REVIEW,
            enforceability_rationale=reason,
            recommended_actions="Manual review of the source document",
            confidence_score=0.0,
            failure_reason=reason,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def has_confidence(self) -> bool:
        return self.confidence_score is not None and self.confidence_score > 0

    def schema_values(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in SCHEMA_FIELDS}

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
