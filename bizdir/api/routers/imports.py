"""
Endpoint for submitting business CSV imports.
"""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from bizdir.api.schemas.shared import ImportOptions, ImportSubmitResponse
from bizdir.core.security import Caller, require_admin
from bizdir.domain.imports.orchestrator import submit_import
from bizdir.domain.imports.processors.csv_processor import ImportInputError

router = APIRouter(prefix="/admin", tags=["imports"])
logger = logging.getLogger(__name__)


@router.post("/imports", response_model=ImportSubmitResponse)
async def submit_import_endpoint(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    options_json: str = Form("{}"),
    caller: Caller = Depends(require_admin),
):
    """
    Upload a CSV of businesses and start an import job.

    Parameters:
    - file: CSV with a header row
    - options_json: JSON-encoded ImportOptions (dry_run, preview_only,
      dedupe_mode, dedupe_scope, field_mapping, skip_validation, batch_size,
      max_errors, ...)

    Returns the job id immediately; processing continues in the background.
    With ``preview_only`` no job is created and only the preview is returned.
    """
    try:
        options = ImportOptions(**json.loads(options_json or "{}"))
    except (json.JSONDecodeError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid options JSON: {exc}")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid import options: {exc.errors(include_url=False)}")

    filename = file.filename or "upload.csv"
    logger.info("Received import upload '%s' from %s", filename, caller.id)

    try:
        file_content = await file.read()
        result = submit_import(
            filename,
            file_content,
            options,
            actor_id=caller.id,
            dispatch=background_tasks.add_task,
        )
    except ImportInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("Failed to start import for '%s'", filename)
        raise HTTPException(status_code=500, detail=f"Failed to start import: {exc}")

    return ImportSubmitResponse(success=True, **result)
