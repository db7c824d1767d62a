"""
Prompt assembly for the legal-audit extraction call.

  system instructions = [master preamble]  +  field schema  +  [unit context]

The field schema below is authoritative: the Result Merger and the report
depend on these exact keys. The optional master prompt stored at
masters/legal_audit_prompt.json only contributes role, scope and risk
classification guidance; any output schema it lists is ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from app.schemas.records import NOT_IN_SECTION, SCHEMA_FIELDS

logger = logging.getLogger(__name__)

_FIELD_HINTS: dict[str, str] = {
    "risk_rating":             "High|Medium|Low",
    "enforceability_decision": "Enforceable|Enforceable with Conditions|Not Enforceable",
}

BASE_INSTRUCTIONS = (
    "You are a legal document audit assistant for a bank/NBFC.\n"
    "Analyze this legal document and extract structured information.\n"
    "Return ONLY a valid JSON object with these exact fields:\n"
)

CLOSING_INSTRUCTIONS = (
    "confidence_score is your confidence in this extraction from 0 to 100.\n"
    "Use \"Unknown\" for anything the document does not state.\n"
    "No markdown. No explanation. Just JSON."
)


def schema_template() -> str:
    fields: dict[str, Any] = {name: _FIELD_HINTS.get(name, "string") for name in SCHEMA_FIELDS}
    fields["confidence_score"] = 0.0
    return json.dumps(fields, indent=2)


@dataclass(frozen=True)
class UnitContext:
    """Position of a unit inside a multi-unit document."""
    index:      int           # 0-based
    total:      int
    span:       str | None = None   # e.g. "pages 6-10 of 42"

    def render(self) -> str:
        where = f" ({self.span})" if self.span else ""
        return (
            f"This is part {self.index + 1} of {self.total} of a larger document{where}. "
            "Extract only what appears in this part and do not claim the document is complete. "
            f"For fields this part does not cover, answer \"{NOT_IN_SECTION}\"."
        )


def master_preamble(master: dict[str, Any] | None) -> str:
    """Render role, scope and risk guidance from the stored master prompt."""
    if not master:
        return ""

    lines: list[str] = []
    role = master.get("systemRole")
    if role:
        lines.append(str(role).strip())

    scope = master.get("scope") or []
    if scope:
        lines.append("Review scope:")
        lines.extend(f"- {item}" for item in scope)

    classification = master.get("riskClassification") or {}
    for level in ("high", "medium", "low"):
        items = classification.get(level) or []
        if items:
            lines.append(f"{level.capitalize()} risk indicators:")
            lines.extend(f"- {item}" for item in items)

    return "\n".join(lines)


def build_system_instructions(
    master: dict[str, Any] | None = None,
    context: UnitContext | None = None,
) -> str:
    parts = []
    preamble = master_preamble(master)
    if preamble:
        parts.append(preamble)
    parts.append(BASE_INSTRUCTIONS + schema_template() + "\n" + CLOSING_INSTRUCTIONS)
    if context is not None and context.total > 1:
        parts.append(context.render())
    return "\n\n".join(parts)
