"""
Endpoints for tracking, cancelling and reporting on import jobs.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from bizdir.api.schemas.shared import ImportJobListResponse, ImportJobResponse
from bizdir.core.security import require_admin
from bizdir.domain.imports.jobs import (
    JobNotFoundError,
    JobStateError,
    get_import_job,
    list_import_jobs,
    request_job_cancellation,
)
from bizdir.domain.imports.reports import job_report_csv

router = APIRouter(prefix="/admin", tags=["import-jobs"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str):
    job = get_import_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ImportJobResponse(success=True, job=job)


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    jobs, summary = list_import_jobs(limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=jobs,
        summary=summary,
        limit=limit,
        offset=offset,
    )


@router.post("/import-jobs/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_job_endpoint(job_id: str):
    """Request cancellation; the job stops before its next batch."""
    try:
        job = request_job_cancellation(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    return ImportJobResponse(success=True, job=job)


@router.get("/import-jobs/{job_id}/report")
async def download_import_job_report(job_id: str):
    """CSV of every error, warning and duplicate recorded on the job."""
    job = get_import_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    try:
        content = job_report_csv(job)
    except Exception as exc:
        logger.exception("Failed to build report for import job %s", job_id)
        raise HTTPException(status_code=500, detail=f"Failed to build report: {exc}")

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-job-{job_id}-report.csv"'},
    )
