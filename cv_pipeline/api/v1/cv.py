"""CV pipeline API routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.core.security import get_current_user
from cv_pipeline.db.database import get_db
from cv_pipeline.schemas.cv import (
    CVUploadResponse,
    ExtractAndSaveRequest,
    ExtractAndSaveResponse,
    ExtractionStatusResponse,
    StorageHealthResponse,
)
from cv_pipeline.services.cv_ingestion import CVIngestionService
from cv_pipeline.services.cv_storage import CVStorageService, get_cv_storage_service
from cv_pipeline.utils.exceptions import ValidationError

router = APIRouter()


def get_ingestion_service(
    db: AsyncSession = Depends(get_db),
    storage: CVStorageService = Depends(get_cv_storage_service),
) -> CVIngestionService:
    return CVIngestionService(db, storage)


@router.post(
    "/upload",
    response_model=CVUploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_cv(
    file: Optional[UploadFile] = File(None, description="CV document (PDF or DOCX, max 10MB)"),
    employee_id: Optional[int] = Form(None, description="Employee the CV belongs to"),
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: CVIngestionService = Depends(get_ingestion_service),
):
    """
    Upload a CV for an employee.

    The file is stored and a pending extraction is created; processing
    happens in the background. Poll /cv/extraction-status/{id} for progress.
    """
    if employee_id is None:
        raise ValidationError("employee_id is required", field="employee_id")

    content = None
    filename = None
    content_type = None
    if file is not None:
        # One byte past the limit is enough to reject an oversized file
        content = await file.read(settings.CV_MAX_UPLOAD_SIZE + 1)
        filename = file.filename
        content_type = file.content_type

    extraction = await service.upload(
        tenant_id=current_user["tenant_id"],
        employee_id=employee_id,
        content=content,
        original_filename=filename,
        mime_type=content_type,
    )
    return CVUploadResponse(
        extraction_id=str(extraction.id),
        employee_id=extraction.employee_id,
        status=extraction.status,
        file_size=extraction.file_size_bytes,
        original_filename=extraction.original_filename,
    )


@router.post("/extract-and-save", response_model=ExtractAndSaveResponse)
async def extract_and_save(
    request: ExtractAndSaveRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: CVIngestionService = Depends(get_ingestion_service),
):
    """Queue the employee's most recent pending CV for extraction."""
    extraction = await service.enqueue(current_user["tenant_id"], request.employee_id)
    return ExtractAndSaveResponse(
        success=True,
        jobId=str(extraction.id),
        message="CV queued for extraction. Poll the status endpoint for progress.",
    )


@router.get("/extraction-status/{extraction_id}", response_model=ExtractionStatusResponse)
async def get_extraction_status(
    extraction_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: CVIngestionService = Depends(get_ingestion_service),
):
    return await service.get_status(current_user["tenant_id"], extraction_id)


@router.delete("/extractions/{extraction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_extraction(
    extraction_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: CVIngestionService = Depends(get_ingestion_service),
):
    """Delete an extraction and its stored file."""
    await service.delete(current_user["tenant_id"], extraction_id)


@router.get("/storage-health", response_model=StorageHealthResponse)
async def storage_health(
    storage: CVStorageService = Depends(get_cv_storage_service),
):
    health = await storage.health_check()
    if health["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health)
    return health
