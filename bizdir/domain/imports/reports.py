"""
Downloadable outcome report for an import job.

One CSV line per recorded error, warning or duplicate, ordered by data row,
with the row's mapped attributes spread into columns so the file can be
fixed up and re-imported.
"""
import logging
from io import StringIO
from typing import Any, Dict, List

import pandas as pd

from bizdir.domain.imports.field_mapper import CANONICAL_FIELDS

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["kind", "row", "field", "message", "existing_business_id"]


def _report_rows(job: Dict[str, Any]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for kind, entries in (
        ("error", job.get("errors") or []),
        ("warning", job.get("warnings") or []),
        ("duplicate", job.get("duplicates") or []),
    ):
        for entry in entries:
            line = {
                "kind": kind,
                "row": entry.get("row"),
                "field": entry.get("field"),
                "message": entry.get("message") or entry.get("reason"),
                "existing_business_id": entry.get("existing_business_id"),
            }
            data = entry.get("data")
            if isinstance(data, dict):
                line.update({attribute: data.get(attribute) for attribute in CANONICAL_FIELDS})
            rows.append(line)
    return rows


def build_job_report(job: Dict[str, Any]) -> pd.DataFrame:
    """Job issues as a DataFrame sorted by row (job-level entries last)."""
    frame = pd.DataFrame(_report_rows(job), columns=REPORT_COLUMNS + list(CANONICAL_FIELDS))
    if frame.empty:
        return frame
    frame["row"] = frame["row"].astype("Int64")
    frame = frame.sort_values(by="row", kind="stable", na_position="last")
    # Drop attribute columns no entry carries
    empty_columns = [column for column in CANONICAL_FIELDS if frame[column].isna().all()]
    return frame.drop(columns=empty_columns).reset_index(drop=True)


def job_report_csv(job: Dict[str, Any]) -> str:
    frame = build_job_report(job)
    buffer = StringIO()
    frame.to_csv(buffer, index=False)
    logger.info("Built report for import job %s with %d lines", job.get("id"), len(frame))
    return buffer.getvalue()
