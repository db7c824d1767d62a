"""
Report generation — the artifact handed back to the user.

The orchestrator only depends on ReportGenerator.generate(); spreadsheet
rendering is a separate concern. The default JsonReportGenerator writes one
row per input document (placeholder rows included) plus the failed list and
a risk summary to jobs/<id>/output/legal_audit_report.json.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Sequence

from app.schemas.jobs import FailedDocument, utcnow
from app.schemas.records import MANUAL_REVIEW, AnalysisRecord
from app.storage.base import BlobStore
from app.storage.keys import JobKeys

logger = logging.getLogger(__name__)


@dataclass
class RiskSummary:
    total:         int = 0
    high:          int = 0
    medium:        int = 0
    low:           int = 0
    manual_review: int = 0
    unknown:       int = 0
    failed:        int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def summarize_risk(
    results: Sequence[AnalysisRecord],
    failed: Sequence[FailedDocument] = (),
) -> RiskSummary:
    summary = RiskSummary(total=len(results), failed=len(failed))
    for record in results:
        rating = record.risk_rating.strip().lower()
        if rating == "high":
            summary.high += 1
        elif rating == "medium":
            summary.medium += 1
        elif rating == "low":
            summary.low += 1
        elif rating == MANUAL_REVIEW.lower():
            summary.manual_review += 1
        else:
            summary.unknown += 1
    return summary


class ReportGenerator(ABC):

    @abstractmethod
    async def generate(
        self,
        job_id: str,
        results: Sequence[AnalysisRecord],
        failed: Sequence[FailedDocument],
    ) -> str:
        """Render the report and return its blob key."""


class JsonReportGenerator(ReportGenerator):

    def __init__(self, store: BlobStore) -> None:
        self._store = store

    async def generate(
        self,
        job_id: str,
        results: Sequence[AnalysisRecord],
        failed: Sequence[FailedDocument],
    ) -> str:
        key = JobKeys(job_id).output()
        summary = summarize_risk(results, failed)
        await self._store.put_json(key, {
            "job_id":           job_id,
            "generated_at":     utcnow().isoformat(),
            "summary":          summary.as_dict(),
            "rows":             [r.to_row() for r in results],
            "failed_documents": [f.model_dump() for f in failed],
        })
        logger.info(
            "Report written | job=%s rows=%d failed=%d key=%s",
            job_id, len(results), len(failed), key,
        )
        return key
