"""
CV blob storage.

Stores uploaded CV files flat in a single directory, on one of two backends
selected once at start-up:

- volume: a mounted persistent volume (``CV_STORAGE_VOLUME_PATH``), used when
  the mount exists or when ``CV_STORAGE_MODE`` / ``RAILWAY_ENVIRONMENT`` say
  production
- local: a project-local directory (``CV_STORAGE_LOCAL_DIR``), created if absent

File names never contain user input beyond the extension:
``cv_<extraction_id>_<YYYY-MM-DD><ext>``.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import get_logger
from cv_pipeline.models.cv_file import CVFile
from cv_pipeline.utils.exceptions import StorageError

logger = get_logger(__name__)

HEALTH_CHECK_FILENAME = ".health_check_test"
DEFAULT_EXTENSION = ".pdf"
ALLOWED_EXTENSIONS = {".pdf", ".docx"}


def detect_production_environment() -> bool:
    """True when the persistent volume should be used."""
    if os.path.exists(settings.CV_STORAGE_VOLUME_PATH):
        return True
    if (settings.RAILWAY_ENVIRONMENT or "").lower() == "production":
        return True
    if (settings.CV_STORAGE_MODE or "").lower() == "production":
        return True
    return False


class CVStorageService:
    """Filesystem-backed blob store for CV documents"""

    def __init__(self, base_path: Optional[Union[str, Path]] = None):
        if base_path is not None:
            self.is_production = False
            self.storage_path = Path(base_path)
        else:
            self.is_production = detect_production_environment()
            self.storage_path = Path(
                settings.CV_STORAGE_VOLUME_PATH
                if self.is_production
                else settings.CV_STORAGE_LOCAL_DIR
            )
        self.storage_type = "volume" if self.is_production else "local"
        self._init_storage_directory()

    def _init_storage_directory(self):
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(
                "Failed to create CV storage directory",
                path=str(self.storage_path),
                error=str(e),
            )
            raise StorageError(f"Cannot initialize storage directory: {e}") from e
        logger.info(
            "CV storage ready",
            path=str(self.storage_path.resolve()),
            storage_type=self.storage_type,
        )

    @staticmethod
    def generate_filename(
        original_filename: Optional[str], extraction_id: Union[str, UUID]
    ) -> str:
        date_part = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        ext = Path(original_filename or "").suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            ext = DEFAULT_EXTENSION
        return f"cv_{extraction_id}_{date_part}{ext}"

    def _write_atomic(self, target: Path, content: bytes):
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_path, prefix=".upload_")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def save(
        self,
        content: bytes,
        original_filename: Optional[str],
        extraction_id: Union[str, UUID],
        tenant_id: str,
        mime_type: str = "application/pdf",
    ) -> Dict[str, Any]:
        """
        Write a CV to storage.

        Readers never observe a partial file: bytes go to a temporary file in
        the same directory which is then renamed over the final name.

        Returns:
            {file_path, file_size, mime_type, original_filename, storage_type}
        """
        if not extraction_id or not tenant_id:
            raise StorageError("extraction_id and tenant_id are required")

        filename = self.generate_filename(original_filename, extraction_id)
        target = (self.storage_path / filename).resolve()

        try:
            await asyncio.to_thread(self._write_atomic, target, content)
        except OSError as e:
            logger.error("Failed to save CV file", filename=filename, error=str(e))
            raise StorageError(f"Failed to save CV file: {e}") from e

        logger.info(
            "CV file saved",
            extraction_id=str(extraction_id),
            tenant_id=tenant_id,
            file_size=len(content),
        )
        return {
            "file_path": str(target),
            "file_size": len(content),
            "mime_type": mime_type,
            "original_filename": original_filename,
            "storage_type": self.storage_type,
        }

    async def read(self, file_path: str) -> bytes:
        try:
            return await asyncio.to_thread(Path(file_path).read_bytes)
        except OSError as e:
            logger.error("Failed to read CV file", file_path=file_path, error=str(e))
            raise StorageError(f"Failed to read CV file: {e}") from e

    async def get_file_path(
        self, db: AsyncSession, extraction_id: Union[str, UUID]
    ) -> Optional[str]:
        result = await db.execute(
            select(CVFile.file_path).where(CVFile.extraction_id == extraction_id)
        )
        return result.scalar_one_or_none()

    async def read_by_extraction_id(
        self, db: AsyncSession, extraction_id: Union[str, UUID]
    ) -> bytes:
        file_path = await self.get_file_path(db, extraction_id)
        if not file_path:
            raise StorageError(f"No file found for extraction {extraction_id}")
        return await self.read(file_path)

    async def delete(self, file_path: str) -> bool:
        """Remove a file. A file that is already gone counts as deleted."""
        try:
            await asyncio.to_thread(Path(file_path).unlink)
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error("Failed to delete CV file", file_path=file_path, error=str(e))
            raise StorageError(f"Failed to delete CV file: {e}") from e
        logger.info("CV file deleted", file_path=file_path)
        return True

    async def delete_by_extraction_id(
        self, db: AsyncSession, extraction_id: Union[str, UUID]
    ) -> bool:
        file_path = await self.get_file_path(db, extraction_id)
        if not file_path:
            return True
        return await self.delete(file_path)

    def _stats(self) -> Dict[str, int]:
        file_count = 0
        total_size = 0
        for entry in self.storage_path.iterdir():
            if entry.is_file() and entry.name.startswith("cv_"):
                file_count += 1
                total_size += entry.stat().st_size
        return {"file_count": file_count, "total_size_bytes": total_size}

    def _probe(self) -> Dict[str, Any]:
        probe = self.storage_path / HEALTH_CHECK_FILENAME
        probe.write_text("ok")
        probe.unlink()
        return self._stats()

    async def health_check(self) -> Dict[str, Any]:
        """Verify the directory is accessible and writable."""
        base = {
            "path": str(self.storage_path.resolve()),
            "environment": "production" if self.is_production else "development",
            "storage_type": self.storage_type,
        }
        try:
            stats = await asyncio.to_thread(self._probe)
        except OSError as e:
            logger.warning("CV storage health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "writable": False,
                "error": str(e),
                "file_count": 0,
                "total_size_bytes": 0,
                **base,
            }
        return {"status": "healthy", "writable": True, **stats, **base}


_storage_service: Optional[CVStorageService] = None


def get_cv_storage_service() -> CVStorageService:
    """Get or create the blob store singleton (FastAPI dependency)."""
    global _storage_service
    if _storage_service is None:
        _storage_service = CVStorageService()
    return _storage_service
