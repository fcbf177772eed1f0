"""
Endpoints for reviewing and resolving duplicate businesses.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from bizdir.api.schemas.shared import (
    DuplicateBulkRequest,
    DuplicateBulkResponse,
    DuplicateDetectResponse,
    DuplicateGroupListResponse,
    DuplicateMergeRequest,
    DuplicateMergeResponse,
    UnmarkDuplicateRequest,
    UnmarkDuplicateResponse,
)
from bizdir.core.security import Caller, require_admin
from bizdir.domain.duplicates.grouping import list_duplicate_groups
from bizdir.domain.duplicates.matcher import MatchMode
from bizdir.domain.duplicates.merge import (
    MergeConflictError,
    MergeError,
    MergeNotFoundError,
    MergeValidationError,
    bulk_duplicate_operation,
    detect_duplicates_for_business,
    merge_duplicates,
    unmark_duplicate,
)

router = APIRouter(prefix="/admin", tags=["duplicates"])
logger = logging.getLogger(__name__)


def _merge_error_status(exc: MergeError) -> int:
    if isinstance(exc, MergeNotFoundError):
        return 404
    if isinstance(exc, MergeConflictError):
        return 409
    if isinstance(exc, MergeValidationError):
        return 400
    return 500


@router.get("/duplicates", response_model=DuplicateGroupListResponse)
async def list_duplicate_groups_endpoint(
    suburb: Optional[str] = None,
    category: Optional[str] = None,
    mode: MatchMode = MatchMode.STRICT,
    resolved: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_admin),
):
    """Duplicate groups over stored businesses, with pagination and aggregate stats."""
    try:
        page = list_duplicate_groups(
            mode=mode,
            suburb=suburb,
            category=category,
            resolved=resolved,
            limit=limit,
            offset=offset,
        )
    except Exception as exc:
        logger.exception("Failed to list duplicate groups")
        raise HTTPException(status_code=500, detail=f"Failed to fetch duplicates: {exc}")

    return DuplicateGroupListResponse(
        success=True,
        groups=[
            {
                "id": group.id,
                "businesses": group.businesses,
                "duplicate_type": group.duplicate_type,
                "confidence": group.confidence,
                "resolved": group.resolved,
                "merged_into": group.merged_into,
                "edges": [list(edge) for edge in group.edges],
            }
            for group in page["groups"]
        ],
        pagination=page["pagination"],
        stats=page["stats"],
    )


@router.get("/duplicates/detect/{business_id}", response_model=DuplicateDetectResponse)
async def detect_duplicates_endpoint(
    business_id: str,
    mode: MatchMode = MatchMode.STRICT,
    include_resolved: bool = False,
    caller: Caller = Depends(require_admin),
):
    try:
        found = detect_duplicates_for_business(business_id, mode=mode, include_resolved=include_resolved)
    except MergeNotFoundError:
        raise HTTPException(status_code=404, detail="Business not found")

    return DuplicateDetectResponse(
        success=True,
        business_id=business_id,
        mode=found["mode"],
        duplicates=found["duplicates"],
    )


@router.post("/duplicates/merge", response_model=DuplicateMergeResponse)
async def merge_duplicates_endpoint(
    request: DuplicateMergeRequest,
    caller: Caller = Depends(require_admin),
):
    """
    Merge duplicates into a primary business in one transaction.

    Strategies:
    - keep_primary: primary data untouched
    - merge_data: backfill attributes the primary lacks from the duplicates
    - manual: apply ``updates`` to the primary
    """
    try:
        result = merge_duplicates(
            request.primary_business_id,
            request.duplicate_business_ids,
            strategy=request.merge_strategy,
            reason=request.reason,
            actor_id=caller.id,
            updates=request.updates,
        )
    except MergeError as exc:
        raise HTTPException(status_code=_merge_error_status(exc), detail=exc.message)
    except Exception as exc:
        logger.exception("Failed to merge duplicates into %s", request.primary_business_id)
        raise HTTPException(status_code=500, detail=f"Failed to merge duplicates: {exc}")

    return DuplicateMergeResponse(
        success=True,
        message=f"Successfully merged {len(result.merged_business_ids)} duplicate businesses",
        result=result.to_dict(),
    )


@router.post("/duplicates/{business_id}/unmark", response_model=UnmarkDuplicateResponse)
async def unmark_duplicate_endpoint(
    business_id: str,
    request: Optional[UnmarkDuplicateRequest] = None,
    caller: Caller = Depends(require_admin),
):
    request = request or UnmarkDuplicateRequest()
    try:
        business = unmark_duplicate(
            business_id,
            restore_status=request.restore_status,
            actor_id=caller.id,
            reason=request.reason,
        )
    except MergeError as exc:
        raise HTTPException(status_code=_merge_error_status(exc), detail=exc.message)

    return UnmarkDuplicateResponse(
        success=True,
        message="Business unmarked as duplicate",
        business=business,
    )


@router.post("/duplicates/bulk", response_model=DuplicateBulkResponse)
async def bulk_duplicate_operation_endpoint(
    request: DuplicateBulkRequest,
    caller: Caller = Depends(require_admin),
):
    """
    Apply one operation to several businesses.

    Operations:
    - merge: merge every other id into ``primary_business_id`` (must be listed)
    - mark_as_duplicate: archive the ids as duplicates of ``primary_business_id`` without moving data
    - unmark: clear the duplicate link on each id and restore ``restore_status``

    Per-business failures of unmark and mark_as_duplicate are reported in
    ``results`` and do not fail the request.
    """
    try:
        report = bulk_duplicate_operation(
            request.operation,
            request.business_ids,
            primary_id=request.primary_business_id,
            merge_strategy=request.merge_strategy,
            restore_status=request.restore_status,
            reason=request.reason,
            actor_id=caller.id,
        )
    except MergeError as exc:
        raise HTTPException(status_code=_merge_error_status(exc), detail=exc.message)
    except Exception as exc:
        logger.exception("Bulk %s operation failed", request.operation.value)
        raise HTTPException(status_code=500, detail=f"Failed to perform bulk duplicate operation: {exc}")

    summary = report["summary"]
    return DuplicateBulkResponse(
        success=True,
        message=(
            f"Bulk {summary['operation']} operation completed: "
            f"{summary['successful']} successful, {summary['failed']} failed"
        ),
        summary=summary,
        results=report["results"],
    )
