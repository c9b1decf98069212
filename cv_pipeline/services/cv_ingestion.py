"""
CV Ingestion Service
Accepts uploaded CVs, creates pipeline records and reports their state.

No extraction happens here: an upload stores the blob, inserts a pending
cv_extractions row and returns. The background worker does the rest.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.db.database import utc_now
from cv_pipeline.models.cv_extraction import CVExtraction
from cv_pipeline.models.cv_file import CVFile
from cv_pipeline.models.employee import Employee
from cv_pipeline.services.cv_storage import CVStorageService
from cv_pipeline.services.metrics import get_metrics_service
from cv_pipeline.services.pipeline_state import (
    TERMINAL_STATUSES,
    ExtractionStatus,
    message_for,
    progress_for,
)
from cv_pipeline.utils.exceptions import (
    FileTooLargeError,
    MissingFileError,
    NotFoundError,
    StorageError,
    StorageUnavailableError,
    TenantError,
    UnsupportedFileTypeError,
)

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
}

SUMMARY_SECTIONS = ("education", "work_experience", "languages", "certifications")


def validate_upload(
    content: Optional[bytes], mime_type: Optional[str], max_size: Optional[int] = None
) -> None:
    """Reject a missing, unsupported or oversized file before any side effect."""
    if content is None:
        raise MissingFileError()
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise UnsupportedFileTypeError(mime_type)
    if not content:
        raise MissingFileError("Uploaded file is empty")
    limit = max_size if max_size is not None else settings.CV_MAX_UPLOAD_SIZE
    if len(content) > limit:
        raise FileTooLargeError(len(content), limit)


def elapsed_seconds(extraction: CVExtraction, now: Optional[datetime] = None) -> float:
    """Time since upload; frozen at the last update once the record is terminal."""
    if extraction.status in {s.value for s in TERMINAL_STATUSES}:
        end = extraction.updated_at or extraction.created_at
    else:
        end = now or utc_now()
    return round(max((end - extraction.created_at).total_seconds(), 0.0), 1)


def build_summary(extraction: CVExtraction) -> Dict[str, Any]:
    result = extraction.extraction_result or {}
    summary: Dict[str, Any] = {
        section: len(result.get(section) or []) for section in SUMMARY_SECTIONS
    }
    skills = result.get("skills") or []
    if isinstance(skills, dict):
        skills = skills.get("extracted_skills") or []
    summary["skills"] = len(skills)
    summary["llm_tokens_used"] = extraction.llm_tokens_used
    summary["llm_cost"] = extraction.llm_cost
    summary["llm_model_used"] = extraction.llm_model_used
    return summary


class CVIngestionService:
    """Upload, re-queue, status and deletion of CV extractions"""

    def __init__(self, db: AsyncSession, storage: CVStorageService):
        self.db = db
        self.storage = storage

    async def _get_employee(self, tenant_id: str, employee_id: int) -> Employee:
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError(f"Employee {employee_id} not found")
        if employee.tenant_id != tenant_id:
            raise TenantError("Employee does not belong to your tenant")
        return employee

    async def _get_extraction(self, tenant_id: str, extraction_id: Any) -> CVExtraction:
        try:
            extraction_uuid = uuid.UUID(str(extraction_id))
        except ValueError:
            raise NotFoundError("CV extraction not found") from None
        extraction = await self.db.get(CVExtraction, extraction_uuid)
        # Other tenants' records are reported as missing
        if extraction is None or extraction.tenant_id != tenant_id:
            raise NotFoundError("CV extraction not found")
        return extraction

    async def upload(
        self,
        tenant_id: str,
        employee_id: int,
        content: Optional[bytes],
        original_filename: Optional[str],
        mime_type: Optional[str],
    ) -> CVExtraction:
        """
        Store a CV and create its pending extraction.

        The blob is written before the row is inserted, so the worker never
        sees a record without its file. If the insert fails the blob is
        removed again.
        """
        if not tenant_id:
            raise TenantError("Tenant ID is required")
        validate_upload(content, mime_type)
        await self._get_employee(tenant_id, employee_id)

        extraction_id = uuid.uuid4()
        mime = mime_type.split(";")[0].strip().lower()

        try:
            stored = await self.storage.save(
                content,
                original_filename,
                extraction_id=extraction_id,
                tenant_id=tenant_id,
                mime_type=mime,
            )
        except StorageError as e:
            logger.error(f"CV upload for employee {employee_id} failed: {e}")
            raise StorageUnavailableError() from e

        now = utc_now()
        extraction = CVExtraction(
            id=extraction_id,
            tenant_id=tenant_id,
            employee_id=employee_id,
            original_filename=original_filename,
            file_type=mime,
            file_size_bytes=stored["file_size"],
            status=ExtractionStatus.PENDING.value,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        cv_file = CVFile(
            extraction_id=extraction_id,
            tenant_id=tenant_id,
            file_path=stored["file_path"],
            file_size=stored["file_size"],
            mime_type=mime,
            original_filename=original_filename,
            uploaded_at=now,
        )

        try:
            self.db.add(extraction)
            self.db.add(cv_file)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            await self.storage.delete(stored["file_path"])
            logger.exception(f"Failed to create CV extraction for employee {employee_id}")
            raise

        get_metrics_service().record_upload(mime)
        logger.info(
            f"CV uploaded: extraction {extraction_id} for employee {employee_id} "
            f"({stored['file_size']} bytes)"
        )
        return extraction

    async def enqueue(self, tenant_id: str, employee_id: int) -> CVExtraction:
        """
        Re-queue the employee's most recent pending extraction.

        Only updated_at changes, so repeating the call is harmless.
        """
        await self._get_employee(tenant_id, employee_id)

        result = await self.db.execute(
            select(CVExtraction)
            .where(
                CVExtraction.tenant_id == tenant_id,
                CVExtraction.employee_id == employee_id,
                CVExtraction.status == ExtractionStatus.PENDING.value,
            )
            .order_by(CVExtraction.created_at.desc())
            .limit(1)
        )
        extraction = result.scalar_one_or_none()
        if extraction is None:
            raise NotFoundError(
                f"No pending CV found for employee {employee_id}. Upload a CV first."
            )

        touched_at = utc_now()
        await self.db.execute(
            update(CVExtraction)
            .where(
                CVExtraction.id == extraction.id,
                CVExtraction.status == ExtractionStatus.PENDING.value,
            )
            .values(updated_at=touched_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        extraction.updated_at = touched_at

        logger.info(f"CV extraction {extraction.id} queued for employee {employee_id}")
        return extraction

    async def get_status(self, tenant_id: str, extraction_id: Any) -> Dict[str, Any]:
        extraction = await self._get_extraction(tenant_id, extraction_id)
        status = extraction.status

        payload: Dict[str, Any] = {
            "extraction_id": str(extraction.id),
            "status": status,
            "employee_id": extraction.employee_id,
            "progress": progress_for(status),
            "message": message_for(status),
            "elapsed_seconds": elapsed_seconds(extraction),
            "created_at": extraction.created_at,
            "updated_at": extraction.updated_at,
            "retry_count": extraction.retry_count or 0,
        }
        if status == ExtractionStatus.COMPLETED.value:
            payload["import_stats"] = extraction.import_stats
            payload["summary"] = build_summary(extraction)
        elif status == ExtractionStatus.FAILED.value:
            payload["error"] = extraction.error_message
            payload["error_phase"] = extraction.error_phase
        return payload

    async def delete(self, tenant_id: str, extraction_id: Any) -> None:
        """Remove the blob and the record; imported rows lose their provenance link."""
        extraction = await self._get_extraction(tenant_id, extraction_id)
        try:
            await self.storage.delete_by_extraction_id(self.db, extraction.id)
        except StorageError as e:
            raise StorageUnavailableError("Could not delete the stored CV file") from e

        await self.db.delete(extraction)
        await self.db.commit()
        logger.info(f"CV extraction {extraction.id} deleted")
