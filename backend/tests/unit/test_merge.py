"""
Unit Tests — Result Merger and AnalysisRecord coercion
"""

from __future__ import annotations

import pytest

from app.processing.merge import (
    ENFORCEABILITY_PRIORITY,
    RISK_PRIORITY,
    merge_narrative,
    merge_records,
    merge_severity,
    merge_yes_flag,
)
from app.schemas.records import MANUAL_REVIEW, NOT_IN_SECTION, UNKNOWN, AnalysisRecord
from tests.conftest import record_payload


def _record(**overrides) -> AnalysisRecord:
    return AnalysisRecord.from_payload(record_payload(**overrides))


@pytest.mark.unit
class TestFieldRules:

    def test_most_severe_risk_wins(self):
        assert merge_severity(["Low", "High", "Medium"], RISK_PRIORITY) == "High"
        assert merge_severity(["low", "medium"], RISK_PRIORITY) == "Medium"

    def test_unlisted_severity_ranks_last(self):
        assert merge_severity(["Moderate", "Low"], RISK_PRIORITY) == "Low"
        assert merge_severity(["Moderate"], RISK_PRIORITY) == "Moderate"

    def test_enforceability_order(self):
        values = ["Enforceable", "Not Enforceable", "Enforceable with Conditions"]
        assert merge_severity(values, ENFORCEABILITY_PRIORITY) == "Not Enforceable"

    def test_yes_flags_are_combined(self):
        merged = merge_yes_flag(["No", "Yes - lien in favour of SBI", "Yes - lien in favour of SBI", "Yes - pending suit"])
        assert merged == "Yes - lien in favour of SBI; Yes - pending suit"

    def test_yes_flag_falls_back_to_first_valid(self):
        assert merge_yes_flag([NOT_IN_SECTION, "No", UNKNOWN]) == "No"

    def test_narrative_dedupes_and_skips_placeholders(self):
        merged = merge_narrative(["Obtain NOC", NOT_IN_SECTION, "Obtain NOC; Verify mutation", UNKNOWN])
        assert merged == "Obtain NOC; Verify mutation"

    def test_narrative_all_placeholders(self):
        assert merge_narrative([NOT_IN_SECTION, UNKNOWN]) == UNKNOWN


@pytest.mark.unit
class TestMergeRecords:

    def test_empty_and_none_inputs(self):
        assert merge_records([]) is None
        assert merge_records([None, None]) is None

    def test_singleton_is_returned_unchanged(self):
        record = _record()
        assert merge_records([None, record]) is record

    def test_identity_fields_take_first_valid_value(self):
        first = _record(appl_no=NOT_IN_SECTION, borrower_name="A. Rao")
        second = _record(appl_no="APL-2002", borrower_name="B. Iyer")

        merged = merge_records([first, second])

        assert merged.appl_no == "APL-2002"
        assert merged.borrower_name == "A. Rao"

    def test_merge_is_conservative(self):
        records = [
            _record(risk_rating="Low", enforceability_decision="Enforceable", confidence_score=0.9),
            _record(risk_rating="High", enforceability_decision="Enforceable with Conditions", confidence_score=0.6),
            _record(risk_rating="Medium", enforceability_decision="Enforceable", confidence_score=0.7),
        ]

        merged = merge_records(records)

        assert merged.risk_rating == "High"
        assert merged.enforceability_decision == "Enforceable with Conditions"
        assert merged.confidence_score == pytest.approx(0.73)
        assert merged.chunked is True
        assert merged.chunks_processed == 3

    def test_tokens_are_summed(self):
        records = [
            _record().model_copy(update={"tokens_input": 100, "tokens_output": 10}),
            _record().model_copy(update={"tokens_input": 250, "tokens_output": 30}),
        ]

        merged = merge_records(records)

        assert merged.tokens_input == 350
        assert merged.tokens_output == 40


@pytest.mark.unit
class TestAnalysisRecord:

    def test_payload_is_coerced(self):
        record = AnalysisRecord.from_payload({
            "appl_no":          1234,
            "borrower_name":    None,
            "recommended_actions": ["Obtain NOC", "Verify dues"],
            "confidence_score": "85%",
        })

        assert record.appl_no == "1234"
        assert record.borrower_name == UNKNOWN
        assert record.recommended_actions == "Obtain NOC; Verify dues"
        assert record.confidence_score == 85.0

    def test_claimed_provenance_is_dropped(self):
        record = AnalysisRecord.from_payload(record_payload(
            _tokens_input=999_999, document_name="forged.pdf",
        ))

        assert record.tokens_input == 0
        assert record.document_name is None

    def test_placeholder(self):
        record = AnalysisRecord.placeholder("deed.pdf", "API call failed: throttled")

        assert record.risk_rating == MANUAL_REVIEW
        assert record.enforceability_decision == MANUAL_REVIEW
        assert record.confidence_score == 0.0
        assert record.has_confidence is False
        assert record.to_row()["_failure_reason"] == "API call failed: throttled"

    def test_row_uses_underscore_provenance(self):
        row = _record().model_copy(update={"chunked": True, "tokens_input": 5}).to_row()

        assert row["_chunked"] is True
        assert row["_tokens_input"] == 5
        assert row["risk_rating"] == "Low"
