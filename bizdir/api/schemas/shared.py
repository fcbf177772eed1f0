from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from bizdir.core.config import settings
from bizdir.db.business_store import APPROVAL_STATUSES, BUSINESS_FIELDS
from bizdir.domain.duplicates.matcher import MatchMode
from bizdir.domain.imports.field_mapper import CANONICAL_FIELDS


class DedupeScope(str, Enum):
    """Whether a detected duplicate skips the row or is only flagged."""
    GLOBAL = "global"
    IMPORT_ONLY = "import_only"


class MergeStrategy(str, Enum):
    KEEP_PRIMARY = "keep_primary"
    MERGE_DATA = "merge_data"
    MANUAL = "manual"


class BulkOperation(str, Enum):
    MERGE = "merge"
    UNMARK = "unmark"
    MARK_AS_DUPLICATE = "mark_as_duplicate"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ImportOptions(BaseModel):
    """Configuration submitted alongside an uploaded CSV."""
    dry_run: bool = True
    preview_only: bool = False

    dedupe_mode: MatchMode = MatchMode.LOOSE
    dedupe_scope: DedupeScope = DedupeScope.GLOBAL

    field_mapping: Dict[str, str] = Field(default_factory=dict)
    skip_unmapped_fields: bool = False

    skip_validation: bool = False
    strict_validation: Optional[bool] = None  # None = use the configured default

    batch_size: int = Field(default_factory=lambda: settings.import_default_batch_size, ge=1)
    max_errors: int = Field(default_factory=lambda: settings.import_default_max_errors, ge=1)

    @field_validator("field_mapping")
    @classmethod
    def validate_field_mapping(cls, value: Dict[str, str]) -> Dict[str, str]:
        invalid = sorted(target for target in value.values() if target not in CANONICAL_FIELDS)
        if invalid:
            raise ValueError(
                f"Field mapping targets must be one of {', '.join(CANONICAL_FIELDS)}; got {', '.join(invalid)}"
            )
        return value

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, value: int) -> int:
        if value > settings.import_max_batch_size:
            raise ValueError(f"batch_size must be at most {settings.import_max_batch_size}")
        return value

    @field_validator("max_errors")
    @classmethod
    def validate_max_errors(cls, value: int) -> int:
        if value > 1000:
            raise ValueError("max_errors must be at most 1000")
        return value


class PreviewIssue(BaseModel):
    type: Literal["error", "warning"]
    message: str
    field: Optional[str] = None
    count: Optional[int] = None


class ImportPreview(BaseModel):
    """Lightweight, non-durable look at an upload before rows are processed."""
    headers: List[str]
    sample_rows: List[List[str]]
    total_rows: int
    field_mapping: Dict[str, str]
    unmapped_headers: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    validation_issues: List[PreviewIssue] = Field(default_factory=list)


class ImportSubmitResponse(BaseModel):
    success: bool
    job_id: Optional[str] = None
    status: str
    message: str
    preview: Optional[ImportPreview] = None


class JobIssueEntry(BaseModel):
    """An error or warning recorded against one row (``row`` is None for job-level errors)."""
    row: Optional[int] = None
    field: Optional[str] = None
    message: str
    data: Optional[Any] = None


class JobDuplicateEntry(BaseModel):
    row: int
    reason: str
    existing_business_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class ImportJobInfo(BaseModel):
    """Snapshot of a durable import job."""
    id: str
    filename: str
    status: JobStatus
    progress: int = 0
    total_rows: int = 0
    processed_rows: int = 0
    success_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    duplicate_count: int = 0
    estimated_time_remaining: Optional[int] = None
    cancel_requested: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)
    preview: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    errors: Optional[List[JobIssueEntry]] = None
    warnings: Optional[List[JobIssueEntry]] = None
    duplicates: Optional[List[JobDuplicateEntry]] = None


class ImportJobResponse(BaseModel):
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    success: bool
    jobs: List[ImportJobInfo]
    summary: Dict[str, int]
    limit: int
    offset: int


class DuplicateBusinessInfo(BaseModel):
    id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    suburb: Optional[str] = None
    category: Optional[str] = None
    abn: Optional[str] = None
    approval_status: Optional[str] = None
    quality_score: Optional[int] = None
    duplicate_of_id: Optional[str] = None
    created_at: Optional[datetime] = None


class DuplicateGroupInfo(BaseModel):
    id: str
    businesses: List[DuplicateBusinessInfo]
    duplicate_type: str
    confidence: str
    resolved: bool
    merged_into: Optional[str] = None
    edges: List[List[str]] = Field(default_factory=list)  # Matched id pairs that formed the group


class DuplicateGroupListResponse(BaseModel):
    success: bool
    groups: List[DuplicateGroupInfo]
    pagination: Dict[str, Any]
    stats: Dict[str, int]


class DuplicateMatchInfo(BaseModel):
    existing_business_id: str
    mode: MatchMode
    confidence: str
    matched_fields: List[str]
    reason: str
    business: Optional[DuplicateBusinessInfo] = None


class DuplicateDetectResponse(BaseModel):
    success: bool
    business_id: str
    mode: MatchMode
    duplicates: List[DuplicateMatchInfo]


class DuplicateMergeRequest(BaseModel):
    primary_business_id: str = Field(..., min_length=1)
    duplicate_business_ids: List[str] = Field(..., min_length=1)
    merge_strategy: MergeStrategy = MergeStrategy.KEEP_PRIMARY
    reason: Optional[str] = Field(default=None, max_length=500)
    updates: Dict[str, Any] = Field(default_factory=dict)  # Applied to the primary under ``manual``

    @field_validator("updates")
    @classmethod
    def validate_updates(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        unknown = sorted(set(value) - set(BUSINESS_FIELDS))
        if unknown:
            raise ValueError(f"Cannot update unknown business fields: {', '.join(unknown)}")
        return value


class MergeResultInfo(BaseModel):
    primary_business_id: str
    merged_business_ids: List[str]
    strategy: MergeStrategy
    merged_data: Dict[str, Any] = Field(default_factory=dict)
    inquiries_transferred: int = 0
    claims_transferred: int = 0


class DuplicateMergeResponse(BaseModel):
    success: bool
    message: str
    result: MergeResultInfo


def _approval_status(value: str) -> str:
    value = value.upper()
    if value not in APPROVAL_STATUSES:
        raise ValueError(f"restore_status must be one of {', '.join(APPROVAL_STATUSES)}")
    return value


class UnmarkDuplicateRequest(BaseModel):
    restore_status: str = "PENDING"
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("restore_status")
    @classmethod
    def validate_restore_status(cls, value: str) -> str:
        return _approval_status(value)


class UnmarkDuplicateResponse(BaseModel):
    success: bool
    message: str
    business: DuplicateBusinessInfo


class DuplicateBulkRequest(BaseModel):
    operation: BulkOperation
    business_ids: List[str] = Field(default_factory=list)
    primary_business_id: Optional[str] = None  # Required for merge and mark_as_duplicate
    merge_strategy: MergeStrategy = MergeStrategy.KEEP_PRIMARY
    restore_status: str = "PENDING"
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("restore_status")
    @classmethod
    def validate_restore_status(cls, value: str) -> str:
        return _approval_status(value)


class DuplicateStateInfo(BaseModel):
    duplicate_of_id: Optional[str] = None
    approval_status: Optional[str] = None


class BulkOperationResult(BaseModel):
    """Outcome for one business (unmark, mark_as_duplicate) or for the whole merge."""
    business_id: Optional[str] = None
    operation: Optional[BulkOperation] = None
    success: bool
    error: Optional[str] = None
    original_state: Optional[DuplicateStateInfo] = None
    new_state: Optional[DuplicateStateInfo] = None
    result: Optional[MergeResultInfo] = None


class BulkOperationSummary(BaseModel):
    operation: BulkOperation
    total: int
    successful: int
    failed: int


class DuplicateBulkResponse(BaseModel):
    success: bool
    message: str
    summary: BulkOperationSummary
    results: List[BulkOperationResult]
