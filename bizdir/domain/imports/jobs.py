"""
Persistent tracking for business import jobs.

An import job is a durable record keyed by id: status, counters, timing and
the ordered per-row errors, warnings and duplicates. The orchestrator is a
stateless worker that reads and writes it, so a job can be polled from any
process.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection

from bizdir.db.session import get_engine
from bizdir.utils.date import utcnow_db
from bizdir.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

JOB_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)

ISSUE_ERROR = "error"
ISSUE_WARNING = "warning"
ISSUE_DUPLICATE = "duplicate"

COUNTER_FIELDS = (
    "total_rows",
    "processed_rows",
    "success_count",
    "error_count",
    "warning_count",
    "duplicate_count",
    "progress",
    "estimated_time_remaining",
)


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.message = f"Import job '{job_id}' not found"
        super().__init__(self.message)


class JobStateError(RuntimeError):
    """Raised for transitions the job state machine does not allow."""

    def __init__(self, job_id: str, status: str, message: Optional[str] = None):
        self.job_id = job_id
        self.status = status
        self.message = message or f"Import job '{job_id}' is already {status}"
        super().__init__(self.message)


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "filename": row["filename"],
        "status": row["status"],
        "progress": row["progress"] or 0,
        "total_rows": row["total_rows"] or 0,
        "processed_rows": row["processed_rows"] or 0,
        "success_count": row["success_count"] or 0,
        "error_count": row["error_count"] or 0,
        "warning_count": row["warning_count"] or 0,
        "duplicate_count": row["duplicate_count"] or 0,
        "estimated_time_remaining": row["estimated_time_remaining"],
        "cancel_requested": bool(row["cancel_requested"]),
        "options": load_json(row["options"], default={}),
        "preview": load_json(row["preview"]),
        "created_by": row["created_by"],
        "started_at": row["started_at"],
        "ended_at": row["ended_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _issue_to_entry(row: Any) -> Dict[str, Any]:
    entry = {
        "row": row["row_index"],
        "message": row["message"],
        "data": load_json(row["row_data"]),
    }
    if row["kind"] == ISSUE_DUPLICATE:
        entry["reason"] = entry.pop("message")
        entry["existing_business_id"] = row["existing_business_id"]
    else:
        entry["field"] = row["field"]
    return entry


def create_import_job(
    *,
    filename: str,
    total_rows: int,
    options: Optional[Dict[str, Any]] = None,
    preview: Optional[Dict[str, Any]] = None,
    created_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Create and persist a new job in the ``pending`` state."""
    engine = get_engine()
    job_id = str(uuid.uuid4())
    now = utcnow_db()

    insert_sql = """
    INSERT INTO import_jobs (
        id, filename, status, progress, total_rows, processed_rows, success_count,
        error_count, warning_count, duplicate_count, cancel_requested, options, preview,
        created_by, created_at, updated_at
    )
    VALUES (
        :id, :filename, 'pending', 0, :total_rows, 0, 0,
        0, 0, 0, 0, :options, :preview,
        :created_by, :created_at, :updated_at
    )
    """
    with engine.begin() as conn:
        conn.execute(text(insert_sql), {
            "id": job_id,
            "filename": filename,
            "total_rows": total_rows,
            "options": dump_json(options or {}),
            "preview": dump_json(preview),
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        })

    logger.info("Created import job %s for '%s' (%d rows)", job_id, filename, total_rows)
    return get_import_job(job_id, include_issues=False)


def _fetch_job_row(conn: Connection, job_id: str) -> Optional[Any]:
    return conn.execute(
        text("SELECT * FROM import_jobs WHERE id = :job_id"),
        {"job_id": job_id},
    ).mappings().first()


def _fetch_issues(conn: Connection, job_id: str) -> Dict[str, List[Dict[str, Any]]]:
    rows = conn.execute(
        text("""
            SELECT kind, row_index, field, message, existing_business_id, row_data
            FROM import_job_issues
            WHERE job_id = :job_id
            ORDER BY seq
        """),
        {"job_id": job_id},
    ).mappings().all()

    issues: Dict[str, List[Dict[str, Any]]] = {"errors": [], "warnings": [], "duplicates": []}
    bucket = {ISSUE_ERROR: "errors", ISSUE_WARNING: "warnings", ISSUE_DUPLICATE: "duplicates"}
    for row in rows:
        issues[bucket[row["kind"]]].append(_issue_to_entry(row))
    return issues


def get_import_job(job_id: str, include_issues: bool = True) -> Optional[Dict[str, Any]]:
    """Fetch a job snapshot; safe to poll while the job is running."""
    engine = get_engine()
    with engine.connect() as conn:
        row = _fetch_job_row(conn, job_id)
        if not row:
            return None
        job = _row_to_job(row)
        if include_issues:
            job.update(_fetch_issues(conn, job_id))
    return job


def list_import_jobs(*, limit: int = 50, offset: int = 0) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """
    List jobs newest first, with per-status counts over all jobs.

    Returns:
        Tuple of (job summaries without issue lists, summary counts)
    """
    engine = get_engine()
    with engine.connect() as conn:
        rows = conn.execute(
            text("""
                SELECT * FROM import_jobs
                ORDER BY created_at DESC, id
                LIMIT :limit OFFSET :offset
            """),
            {"limit": limit, "offset": offset},
        ).mappings().all()
        status_rows = conn.execute(
            text("SELECT status, COUNT(*) AS total FROM import_jobs GROUP BY status")
        ).mappings().all()

    summary = {status: 0 for status in JOB_STATUSES}
    for row in status_rows:
        summary[row["status"]] = row["total"]
    summary["total"] = sum(summary[status] for status in JOB_STATUSES)
    return [_row_to_job(row) for row in rows], summary


def update_import_job(
    job_id: str,
    *,
    status: Optional[str] = None,
    counters: Optional[Dict[str, Any]] = None,
    issues: Sequence[Dict[str, Any]] = (),
    ended: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Apply a progress update and append issues in one transaction.

    Status changes out of a terminal state are ignored so a finished job is
    never reopened.
    """
    engine = get_engine()
    update_parts = ["updated_at = :updated_at"]
    params: Dict[str, Any] = {"job_id": job_id, "updated_at": utcnow_db()}

    for name, value in (counters or {}).items():
        if name not in COUNTER_FIELDS:
            raise ValueError(f"Unknown job counter '{name}'")
        update_parts.append(f"{name} = :{name}")
        params[name] = value
    if status is not None:
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status '{status}'")
        update_parts.append("status = :status")
        params["status"] = status
        if status == PROCESSING:
            update_parts.append("started_at = COALESCE(started_at, :updated_at)")
    if ended:
        update_parts.append("ended_at = COALESCE(ended_at, :ended_at)")
        params["ended_at"] = params["updated_at"]

    terminal_list = ", ".join(f"'{s}'" for s in TERMINAL_STATUSES)
    update_sql = f"""
    UPDATE import_jobs
    SET {", ".join(update_parts)}
    WHERE id = :job_id AND status NOT IN ({terminal_list})
    """

    with engine.begin() as conn:
        result = conn.execute(text(update_sql), params)
        if result.rowcount == 0:
            row = _fetch_job_row(conn, job_id)
            if not row:
                raise JobNotFoundError(job_id)
            logger.warning("Ignoring update to job %s in terminal state %s", job_id, row["status"])
            return None
        if issues:
            conn.execute(
                text("""
                    INSERT INTO import_job_issues (
                        id, job_id, seq, kind, row_index, field, message, existing_business_id, row_data
                    )
                    VALUES (
                        :id, :job_id, :seq, :kind, :row_index, :field, :message, :existing_business_id, :row_data
                    )
                """),
                [
                    {
                        "id": str(uuid.uuid4()),
                        "job_id": job_id,
                        "seq": issue["seq"],
                        "kind": issue["kind"],
                        "row_index": issue.get("row"),
                        "field": issue.get("field"),
                        "message": issue.get("message"),
                        "existing_business_id": issue.get("existing_business_id"),
                        "row_data": dump_json(issue.get("data")),
                    }
                    for issue in issues
                ],
            )
    return params


def request_job_cancellation(job_id: str) -> Dict[str, Any]:
    """
    Ask a running job to stop at its next batch boundary.

    Raises:
        JobNotFoundError: Unknown job id
        JobStateError: The job already reached a terminal state
    """
    engine = get_engine()
    with engine.begin() as conn:
        row = _fetch_job_row(conn, job_id)
        if not row:
            raise JobNotFoundError(job_id)
        if row["status"] in TERMINAL_STATUSES:
            raise JobStateError(job_id, row["status"], f"Cannot cancel a job that is already {row['status']}")
        conn.execute(
            text("UPDATE import_jobs SET cancel_requested = 1, updated_at = :now WHERE id = :job_id"),
            {"job_id": job_id, "now": utcnow_db()},
        )
    logger.info("Cancellation requested for import job %s", job_id)
    return get_import_job(job_id, include_issues=False)


def is_cancel_requested(job_id: str) -> bool:
    engine = get_engine()
    with engine.connect() as conn:
        value = conn.execute(
            text("SELECT cancel_requested FROM import_jobs WHERE id = :job_id"),
            {"job_id": job_id},
        ).scalar()
    return bool(value)
