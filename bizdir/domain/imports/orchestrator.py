"""
Import job orchestration.

``submit_import`` parses an upload, builds the preview and creates the
durable job; ``run_import_job`` is the stateless worker that walks the rows
in batches and records every outcome on the job.

Per row, in file order: map -> validate -> duplicate check -> persist.
Row-level problems are recorded and processing continues; only the error
threshold or an unexpected exception fails the job.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.exc import DataError, IntegrityError

from bizdir.api.schemas.shared import DedupeScope, ImportOptions
from bizdir.core.config import settings
from bizdir.core.logging_config import job_log_context
from bizdir.db.audit import (
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_FAILED,
    IMPORT_INITIATED,
    AuditSink,
    audit_sink,
)
from bizdir.db.business_store import BUSINESS_STORE, BusinessStore
from bizdir.db.session import get_engine
from bizdir.domain.duplicates.matcher import AcceptedRecordIndex, DuplicateMatch, DuplicateMatcher
from bizdir.utils.locks import StoreLockManager
from .field_mapper import FieldMappingResult, apply_field_mapping, infer_field_mapping
from .jobs import (
    CANCELLED,
    COMPLETED,
    FAILED,
    ISSUE_DUPLICATE,
    ISSUE_ERROR,
    ISSUE_WARNING,
    PROCESSING,
    create_import_job,
    get_import_job,
    is_cancel_requested,
    update_import_job,
)
from .processors.csv_processor import ImportInputError, ParsedCsv, parse_csv_upload
from .validators import RowValidator, ValidationPolicy, summarize_sample_issues

logger = logging.getLogger(__name__)

# Storage errors caused by one row's data; anything else fails the job
ROW_STORAGE_ERRORS = (IntegrityError, DataError, ValueError)

PREVIEW_READY = "preview_ready"

# Preview thresholds above which a file is flagged as large
LARGE_COLUMN_COUNT = 10
LARGE_ROW_COUNT = 1000

Dispatch = Callable[..., Any]


def run_inline(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Default dispatcher: run the job in the calling thread."""
    return fn(*args, **kwargs)


def coerce_options(options: Union[ImportOptions, Dict[str, Any], None]) -> ImportOptions:
    if options is None:
        return ImportOptions()
    if isinstance(options, ImportOptions):
        return options
    return ImportOptions.model_validate(options)


def resolve_field_mapping(headers: Sequence[str], options: ImportOptions) -> FieldMappingResult:
    try:
        return infer_field_mapping(headers, options.field_mapping)
    except ValueError as exc:
        raise ImportInputError("Invalid field mapping", str(exc)) from exc


def build_validator(options: ImportOptions) -> RowValidator:
    return RowValidator(
        ValidationPolicy.from_settings(
            skip_validation=options.skip_validation,
            strict_validation=options.strict_validation,
        )
    )


def build_preview(
    parsed: ParsedCsv,
    options: ImportOptions,
    mapping: Optional[FieldMappingResult] = None,
) -> Dict[str, Any]:
    """
    Headers, the first few rows, the inferred mapping and a light validation
    pass over those sample rows. Writes nothing.
    """
    mapping = mapping or resolve_field_mapping(parsed.headers, options)
    sample_rows = parsed.rows[: settings.preview_sample_rows]

    recommendations = list(mapping.rationales)
    if not options.skip_unmapped_fields:
        recommendations.extend(
            f'Column "{header}" is not mapped and will be ignored' for header in mapping.unmapped_headers
        )
    if len(parsed.headers) > LARGE_COLUMN_COUNT:
        recommendations.append(
            f"Large CSV with {len(parsed.headers)} columns - consider mapping only essential fields"
        )
    if parsed.total_rows > LARGE_ROW_COUNT:
        recommendations.append(
            f"Large dataset with {parsed.total_rows} rows - consider using batch processing"
        )
    if not {"email", "phone"} & set(mapping.mapped_fields):
        recommendations.append(
            "No contact information mapped - consider adding email or phone for better business profiles"
        )

    return {
        "headers": parsed.headers,
        "sample_rows": sample_rows,
        "total_rows": parsed.total_rows,
        "field_mapping": mapping.mapping,
        "unmapped_headers": mapping.unmapped_headers,
        "recommendations": recommendations,
        "validation_issues": summarize_sample_issues(
            parsed.headers, sample_rows, mapping.mapping, build_validator(options)
        ),
    }


@dataclass
class JobCounters:
    """In-flight counters and not-yet-flushed issues for one running job."""
    total_rows: int
    processed_rows: int = 0
    success_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    duplicate_count: int = 0
    pending_issues: List[Dict[str, Any]] = field(default_factory=list)
    next_seq: int = 0

    def add_issue(self, kind: str, **entry: Any) -> None:
        entry.update(kind=kind, seq=self.next_seq)
        self.next_seq += 1
        self.pending_issues.append(entry)

    def take_issues(self) -> List[Dict[str, Any]]:
        issues, self.pending_issues = self.pending_issues, []
        return issues

    @property
    def progress(self) -> int:
        if self.total_rows <= 0:
            return 100
        return min(100, int(self.processed_rows * 100 / self.total_rows))

    def estimate_remaining(self, elapsed: float) -> Optional[int]:
        if self.processed_rows <= 0:
            return None
        remaining = self.total_rows - self.processed_rows
        return int(round((elapsed / self.processed_rows) * remaining))

    def snapshot(self, elapsed: float) -> Dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "duplicate_count": self.duplicate_count,
            "progress": self.progress,
            "estimated_time_remaining": self.estimate_remaining(elapsed),
        }

    def summary(self) -> Dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "duplicate_count": self.duplicate_count,
        }


class ImportRunner:
    """Processes rows for one job and accumulates their outcomes in ``counters``."""

    def __init__(self, headers: Sequence[str], options: ImportOptions, mapping: FieldMappingResult, counters: JobCounters):
        self.headers = list(headers)
        self.options = options
        self.mapping = mapping.mapping
        self.counters = counters
        self.validator = build_validator(options)
        self.matcher = DuplicateMatcher(options.dedupe_mode)
        # Dry runs write nothing, so rows accepted earlier in the job are matched from memory
        self.accepted = AcceptedRecordIndex(options.dedupe_mode, self.matcher.loose_config)
        self.engine = get_engine()

    def process_row(self, row_number: int, raw_row: Sequence[str]) -> None:
        counters = self.counters
        record = apply_field_mapping(self.headers, raw_row, self.mapping)
        outcome = self.validator.validate(record)

        if outcome.is_rejected:
            for error in outcome.errors:
                counters.add_issue(ISSUE_ERROR, row=row_number, field=error.field, message=error.message, data=record)
            counters.error_count += 1
            return

        # Warnings only count for rows that pass validation
        for warning in outcome.warnings:
            counters.add_issue(ISSUE_WARNING, row=row_number, field=warning.field, message=warning.message, data=record)
            counters.warning_count += 1

        try:
            match = self._check_and_persist(row_number, record)
        except ROW_STORAGE_ERRORS as exc:
            detail = getattr(exc, "orig", None) or exc
            logger.warning("Row %d could not be stored: %s", row_number, detail)
            counters.add_issue(
                ISSUE_ERROR, row=row_number, field=None, message=f"Failed to store business: {detail}", data=record
            )
            counters.error_count += 1
            return

        if match:
            counters.add_issue(
                ISSUE_DUPLICATE,
                row=row_number,
                message=match.reason,
                existing_business_id=match.existing_id,
                data=record,
            )
            counters.duplicate_count += 1
        else:
            counters.success_count += 1

    def _check_and_persist(self, row_number: int, record: Dict[str, str]) -> Optional[DuplicateMatch]:
        keep_duplicates = self.options.dedupe_scope == DedupeScope.IMPORT_ONLY

        with StoreLockManager.acquire(BUSINESS_STORE):
            if self.options.dry_run:
                with self.engine.connect() as conn:
                    match = self.matcher.find_match(
                        record, BusinessStore(conn), self.accepted.candidates_for(record)
                    )
                if match is None or keep_duplicates:
                    self.accepted.add({**record, "id": f"dry-run-row-{row_number}"})
                return match

            with self.engine.begin() as conn:
                store = BusinessStore(conn)
                match = self.matcher.find_match(record, store)
                if match is None or keep_duplicates:
                    store.create(record)
            return match


def _finish_job(
    job_id: str,
    status: str,
    counters: JobCounters,
    elapsed: float,
    reason: Optional[str] = None,
) -> None:
    """Flush remaining issues and move the job to a terminal state; best effort."""
    if reason:
        counters.add_issue(ISSUE_ERROR, row=None, field=None, message=reason)
    snapshot = counters.snapshot(elapsed)
    snapshot["estimated_time_remaining"] = 0 if status == COMPLETED else None
    if status == COMPLETED:
        snapshot["progress"] = 100
    try:
        update_import_job(job_id, status=status, counters=snapshot, issues=counters.take_issues(), ended=True)
    except Exception as exc:
        logger.error("Unable to finalize import job %s as %s: %s", job_id, status, exc)


def run_import_job(
    job_id: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    options: Union[ImportOptions, Dict[str, Any], None] = None,
    actor_id: Optional[str] = None,
    audit: AuditSink = audit_sink,
) -> Optional[Dict[str, Any]]:
    """
    Process every row of a pending job in sequential batches.

    Cancellation is observed before each batch. Reaching ``max_errors`` stops
    mid-batch. Already committed rows are never rolled back.

    Returns:
        Final job snapshot, or None if it could not be read back
    """
    with job_log_context(job_id):
        return _run_import_job(job_id, headers, rows, coerce_options(options), actor_id, audit)


def _run_import_job(
    job_id: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    options: ImportOptions,
    actor_id: Optional[str],
    audit: AuditSink,
) -> Optional[Dict[str, Any]]:
    counters = JobCounters(total_rows=len(rows))
    started = time.monotonic()
    details = {"job_id": job_id, "dry_run": options.dry_run, "dedupe_mode": options.dedupe_mode.value}

    try:
        runner = ImportRunner(headers, options, resolve_field_mapping(headers, options), counters)
        if update_import_job(job_id, status=PROCESSING) is None:
            logger.warning("Import job %s is already finished; not starting it", job_id)
            return get_import_job(job_id)

        logger.info(
            "Processing import job %s: %d rows in batches of %d (dry_run=%s, dedupe=%s/%s)",
            job_id, len(rows), options.batch_size, options.dry_run,
            options.dedupe_mode.value, options.dedupe_scope.value,
        )

        for batch_start in range(0, len(rows), options.batch_size):
            if is_cancel_requested(job_id):
                logger.info("Import job %s cancelled after %d rows", job_id, counters.processed_rows)
                _finish_job(job_id, CANCELLED, counters, time.monotonic() - started)
                audit.record(IMPORT_CANCELLED, job_id, actor_id, {**details, **counters.summary()})
                return get_import_job(job_id)

            batch = rows[batch_start:batch_start + options.batch_size]
            for offset, raw_row in enumerate(batch):
                runner.process_row(batch_start + offset + 1, raw_row)
                counters.processed_rows += 1

                if counters.error_count >= options.max_errors:
                    reason = f"Maximum error limit ({options.max_errors}) reached"
                    logger.warning("Import job %s stopped: %s", job_id, reason)
                    _finish_job(job_id, FAILED, counters, time.monotonic() - started, reason)
                    audit.record(IMPORT_FAILED, job_id, actor_id, {**details, **counters.summary(), "error": reason})
                    return get_import_job(job_id)

            update_import_job(
                job_id,
                counters=counters.snapshot(time.monotonic() - started),
                issues=counters.take_issues(),
            )
            logger.debug("Import job %s progress: %d/%d rows", job_id, counters.processed_rows, counters.total_rows)

        _finish_job(job_id, COMPLETED, counters, time.monotonic() - started)
        logger.info(
            "Import job %s completed: %d succeeded, %d errors, %d duplicates, %d warnings",
            job_id, counters.success_count, counters.error_count, counters.duplicate_count, counters.warning_count,
        )
        audit.record(IMPORT_COMPLETED, job_id, actor_id, {**details, **counters.summary()})

    except Exception as exc:
        logger.exception("Import job %s failed: %s", job_id, exc)
        _finish_job(job_id, FAILED, counters, time.monotonic() - started, f"Processing failed: {exc}")
        audit.record(IMPORT_FAILED, job_id, actor_id, {**details, **counters.summary(), "error": str(exc)})

    try:
        return get_import_job(job_id)
    except Exception as exc:
        logger.error("Unable to load import job %s after processing: %s", job_id, exc)
        return None


def submit_import(
    filename: str,
    file_bytes: bytes,
    options: Union[ImportOptions, Dict[str, Any], None] = None,
    actor_id: Optional[str] = None,
    dispatch: Dispatch = run_inline,
    audit: AuditSink = audit_sink,
) -> Dict[str, Any]:
    """
    Parse an upload and either return its preview or start an import job.

    Input problems raise before any job exists. Otherwise the job is created
    in ``pending`` and ``run_import_job`` is handed to ``dispatch`` (a
    FastAPI ``BackgroundTasks.add_task`` in the API).

    Raises:
        ImportInputError: Empty, oversized, undecodable or malformed file,
            or an invalid field mapping
    """
    options = coerce_options(options)

    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise ImportInputError(
            "File too large",
            f"{len(file_bytes)} bytes exceeds the {settings.upload_max_file_size_mb} MB limit",
        )

    parsed = parse_csv_upload(file_bytes)
    mapping = resolve_field_mapping(parsed.headers, options)
    preview = build_preview(parsed, options, mapping)

    if options.preview_only:
        logger.info("Built preview for '%s' (%d rows); no job created", filename, parsed.total_rows)
        return {
            "job_id": None,
            "status": PREVIEW_READY,
            "message": "Preview generated",
            "preview": preview,
        }

    job = create_import_job(
        filename=filename,
        total_rows=parsed.total_rows,
        options=options.model_dump(mode="json"),
        preview=preview if options.dry_run else None,
        created_by=actor_id,
    )
    audit.record(
        IMPORT_INITIATED,
        job["id"],
        actor_id,
        {
            "job_id": job["id"],
            "filename": filename,
            "total_rows": parsed.total_rows,
            "dry_run": options.dry_run,
            "dedupe_mode": options.dedupe_mode.value,
            "dedupe_scope": options.dedupe_scope.value,
            "batch_size": options.batch_size,
        },
    )

    dispatch(run_import_job, job["id"], parsed.headers, parsed.rows, options, actor_id, audit)

    return {
        "job_id": job["id"],
        "status": job["status"],
        "message": "Dry run started" if options.dry_run else "Import started",
        "preview": preview if options.dry_run else None,
    }
