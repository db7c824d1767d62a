"""
Blob key layout for one job.

    jobs/<id>/metadata.json
    jobs/<id>/uploads/raw/documents.zip
    jobs/<id>/uploads/raw/<single file>
    jobs/<id>/uploads/extracted/<name>
    jobs/<id>/processing/queue.json
    jobs/<id>/processing/logs.json
    jobs/<id>/output/<report>
"""

from __future__ import annotations

import re
from dataclasses import dataclass

JOBS_PREFIX = "jobs/"
MASTER_PROMPT_KEY = "masters/legal_audit_prompt.json"
REPORT_NAME = "legal_audit_report.json"

_UNSAFE_CHARS_RE = re.compile(r'[^A-Za-z0-9._\- ()]')


def sanitize_name(filename: str) -> str:
    """Strip path components and replace unsafe characters."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = _UNSAFE_CHARS_RE.sub("_", basename).strip()
    safe = safe.lstrip(".") or "document"
    return safe[:200]


@dataclass(frozen=True)
class JobKeys:
    job_id: str

    @property
    def root(self) -> str:
        return f"{JOBS_PREFIX}{self.job_id}/"

    @property
    def metadata(self) -> str:
        return f"{self.root}metadata.json"

    @property
    def raw_archive(self) -> str:
        return f"{self.root}uploads/raw/documents.zip"

    def raw_file(self, name: str) -> str:
        return f"{self.root}uploads/raw/{sanitize_name(name)}"

    def extracted(self, name: str) -> str:
        return f"{self.root}uploads/extracted/{name}"

    @property
    def ledger(self) -> str:
        return f"{self.root}processing/queue.json"

    @property
    def logs(self) -> str:
        return f"{self.root}processing/logs.json"

    def output(self, name: str = REPORT_NAME) -> str:
        return f"{self.root}output/{name}"


def job_id_from_metadata_key(key: str) -> str | None:
    """jobs/<id>/metadata.json → <id>; None for any other key."""
    if not key.startswith(JOBS_PREFIX) or not key.endswith("/metadata.json"):
        return None
    parts = key[len(JOBS_PREFIX):].split("/")
    return parts[0] if len(parts) == 2 else None
