"""
Background worker that advances CV extractions through the pipeline.

One in-process asyncio task polls cv_extractions every
``CV_WORKER_POLL_INTERVAL_SECONDS``. Each tick runs, in order:

1. reaper: records stuck in ``processing`` past the deadline -> failed
2. pass 1: oldest ``pending`` records -> processing -> extracted (sync mode)
   or left in processing for the extraction service to complete (async mode)
3. pass 2: oldest ``extracted`` records -> importing -> completed, with a
   bounded retry back to ``extracted`` when the import transaction fails

Records are handled one at a time. Every status change is a compare-and-swap
so a record the extraction service updates on its own is never overwritten.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.db.database import async_session_factory, utc_now
from cv_pipeline.models.cv_extraction import CVExtraction
from cv_pipeline.services.cv_importer import CVImporter
from cv_pipeline.services.cv_storage import CVStorageService, get_cv_storage_service
from cv_pipeline.services.extraction_client import (
    ExtractionServiceClient,
    get_extraction_client,
)
from cv_pipeline.services.llm_audit import LLMAuditService, get_llm_audit_service
from cv_pipeline.services.metrics import get_metrics_service
from cv_pipeline.services.pipeline_state import (
    ErrorPhase,
    ExtractionStatus,
    fail,
    transition,
)
from cv_pipeline.utils.exceptions import ExtractionServiceError

logger = logging.getLogger(__name__)


class CVExtractionWorker:
    """Polls the pipeline table and moves records forward."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        storage: Optional[CVStorageService] = None,
        client: Optional[ExtractionServiceClient] = None,
        audit: Optional[LLMAuditService] = None,
        poll_interval: Optional[float] = None,
        pending_batch_size: Optional[int] = None,
        extracted_batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        processing_deadline: Optional[float] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self._storage = storage
        self._client = client
        self._audit = audit
        self.poll_interval = poll_interval or settings.CV_WORKER_POLL_INTERVAL_SECONDS
        self.pending_batch_size = pending_batch_size or settings.CV_WORKER_PENDING_BATCH_SIZE
        self.extracted_batch_size = (
            extracted_batch_size or settings.CV_WORKER_EXTRACTED_BATCH_SIZE
        )
        self.max_retries = (
            max_retries if max_retries is not None else settings.CV_WORKER_MAX_RETRIES
        )
        self.processing_deadline = (
            processing_deadline or settings.processing_deadline_seconds
        )

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            "ticks": 0,
            "started": 0,
            "imported": 0,
            "failed": 0,
            "retried": 0,
            "reaped": 0,
        }
        self.last_tick_at = None

    @property
    def storage(self) -> CVStorageService:
        if self._storage is None:
            self._storage = get_cv_storage_service()
        return self._storage

    @property
    def client(self) -> ExtractionServiceClient:
        if self._client is None:
            self._client = get_extraction_client()
        return self._client

    @property
    def audit(self) -> LLMAuditService:
        if self._audit is None:
            self._audit = get_llm_audit_service()
        return self._audit

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever(), name="cv-extraction-worker")
        logger.info(
            f"CV extraction worker started (poll every {self.poll_interval}s, "
            f"mode={self.client.mode}, max_retries={self.max_retries})"
        )

    async def stop(self) -> None:
        """Signal the loop and wait for the current tick to finish."""
        self.request_stop()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("CV extraction worker stopped")

    async def run_forever(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("CV extraction worker tick failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue

    async def run_once(self) -> Dict[str, int]:
        """One tick: reaper, then pass 1, then pass 2."""
        counts = {"reaped": 0, "started": 0, "imported": 0}
        counts["reaped"] = await self.reap_stuck()
        if not self._stop_event.is_set():
            counts["started"] = await self.start_pending()
        if not self._stop_event.is_set():
            counts["imported"] = await self.import_extracted()

        self.stats["ticks"] += 1
        self.last_tick_at = utc_now()
        get_metrics_service().record_worker_tick()
        if any(counts.values()):
            logger.info(f"CV worker tick: {counts}")
        return counts

    async def _select_ids(self, status: ExtractionStatus, order_by, limit: int) -> List[Any]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(CVExtraction.id)
                .where(CVExtraction.status == status.value)
                .order_by(order_by)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _claim(
        self, extraction_id, expected: ExtractionStatus, target: ExtractionStatus
    ) -> bool:
        async with self.session_factory() as db:
            swapped = await transition(db, extraction_id, expected, target)
            await db.commit()
            return swapped

    async def _fail(
        self,
        extraction_id,
        expected: ExtractionStatus,
        message: str,
        phase: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self.session_factory() as db:
            swapped = await fail(db, extraction_id, expected, message, phase, extra)
            await db.commit()
        if swapped:
            self.stats["failed"] += 1
        return swapped

    # Reaper

    async def reap_stuck(self) -> int:
        """Fail records left in processing longer than the deadline."""
        cutoff = utc_now() - timedelta(seconds=self.processing_deadline)
        async with self.session_factory() as db:
            result = await db.execute(
                select(CVExtraction.id).where(
                    CVExtraction.status == ExtractionStatus.PROCESSING.value,
                    CVExtraction.updated_at < cutoff,
                )
            )
            stuck = list(result.scalars().all())

        reaped = 0
        for extraction_id in stuck:
            if await self._fail(
                extraction_id,
                ExtractionStatus.PROCESSING,
                f"Extraction timed out: no result after {self.processing_deadline:.0f}s",
                ErrorPhase.PYTHON_EXTRACTION,
            ):
                reaped += 1
        if reaped:
            logger.warning(f"Reaped {reaped} CV extraction(s) stuck in processing")
        self.stats["reaped"] += reaped
        return reaped

    # Pass 1

    async def start_pending(self) -> int:
        ids = await self._select_ids(
            ExtractionStatus.PENDING,
            CVExtraction.created_at.asc(),
            self.pending_batch_size,
        )
        started = 0
        for extraction_id in ids:
            if self._stop_event.is_set():
                break
            if await self.start_extraction(extraction_id):
                started += 1
        return started

    async def start_extraction(self, extraction_id) -> bool:
        """
        Claim a pending record and hand its file to the extraction service.

        Returns True when the record was claimed by this call.
        """
        if not await self._claim(
            extraction_id, ExtractionStatus.PENDING, ExtractionStatus.PROCESSING
        ):
            return False
        self.stats["started"] += 1

        try:
            async with self.session_factory() as db:
                extraction = await db.get(CVExtraction, extraction_id)
                content = await self.storage.read_by_extraction_id(db, extraction_id)
                filename = extraction.original_filename or f"cv_{extraction_id}.pdf"
                mime_type = extraction.file_type or "application/pdf"

            if self.client.is_async:
                await self.client.start_extraction(
                    str(extraction_id), content, filename, mime_type,
                    request_id=str(extraction_id),
                )
                logger.info(f"Extraction {extraction_id} handed to extraction service")
                return True

            start = time.monotonic()
            response = await self.client.extract(
                content, filename, mime_type, request_id=str(extraction_id)
            )
            elapsed = round(time.monotonic() - start, 2)

            async with self.session_factory() as db:
                await transition(
                    db,
                    extraction_id,
                    ExtractionStatus.PROCESSING,
                    ExtractionStatus.EXTRACTED,
                    {
                        "extraction_result": response.to_extraction_result(),
                        "extracted_text": response.extracted_text,
                        "llm_tokens_used": response.llm_tokens_used or 0,
                        "llm_cost": response.extraction_cost,
                        "llm_model_used": response.llm_model_used,
                        "processing_time_seconds": elapsed,
                    },
                )
                await db.commit()
        except ExtractionServiceError as e:
            await self._fail(extraction_id, ExtractionStatus.PROCESSING, e.message, e.phase)
        except Exception as e:
            logger.exception(f"Unexpected error starting extraction {extraction_id}")
            await self._fail(
                extraction_id, ExtractionStatus.PROCESSING, str(e), ErrorPhase.UNKNOWN
            )
        return True

    # Pass 2

    async def import_extracted(self) -> int:
        ids = await self._select_ids(
            ExtractionStatus.EXTRACTED,
            CVExtraction.updated_at.asc(),
            self.extracted_batch_size,
        )
        imported = 0
        for extraction_id in ids:
            if self._stop_event.is_set():
                break
            if await self.import_extraction(extraction_id):
                imported += 1
        return imported

    async def import_extraction(self, extraction_id) -> bool:
        """
        Claim an extracted record and import it in one transaction.

        Returns True when the record reached completed.
        """
        if not await self._claim(
            extraction_id, ExtractionStatus.EXTRACTED, ExtractionStatus.IMPORTING
        ):
            return False

        start = time.monotonic()
        try:
            async with self.session_factory() as db:
                try:
                    await CVImporter(db).import_extraction(extraction_id)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except Exception as e:
            get_metrics_service().record_import("failure", time.monotonic() - start)
            logger.warning(f"Import of extraction {extraction_id} failed: {e}")
            await self._handle_import_failure(extraction_id, e)
            return False

        get_metrics_service().record_import("success", time.monotonic() - start)
        self.stats["imported"] += 1
        await self._log_llm_usage(extraction_id)
        return True

    async def _handle_import_failure(self, extraction_id, error: Exception) -> None:
        """Send the record back to extracted, or fail it once retries run out."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CVExtraction.retry_count).where(CVExtraction.id == extraction_id)
            )
            retry_count = result.scalar_one_or_none() or 0

            if retry_count >= self.max_retries:
                swapped = await fail(
                    db,
                    extraction_id,
                    ExtractionStatus.IMPORTING,
                    f"Worker failed after {retry_count} retries: {error}",
                    ErrorPhase.DATABASE_SAVE,
                )
                await db.commit()
                if swapped:
                    self.stats["failed"] += 1
                    logger.error(
                        f"Extraction {extraction_id} failed permanently after "
                        f"{retry_count} retries"
                    )
                return

            swapped = await transition(
                db,
                extraction_id,
                ExtractionStatus.IMPORTING,
                ExtractionStatus.EXTRACTED,
                {
                    "retry_count": retry_count + 1,
                    "error_message": f"Worker attempt {retry_count + 1} failed: {error}",
                    "error_phase": ErrorPhase.DATABASE_SAVE,
                },
            )
            await db.commit()
            if swapped:
                self.stats["retried"] += 1

    async def _log_llm_usage(self, extraction_id) -> None:
        """Record the extraction's LLM usage. Never affects the pipeline outcome."""
        try:
            async with self.session_factory() as db:
                extraction = await db.get(CVExtraction, extraction_id)
            if extraction is None:
                return
            await self.audit.log_extraction_complete(
                extraction_id=extraction.id,
                tenant_id=extraction.tenant_id,
                tokens_used=extraction.llm_tokens_used,
                cost=extraction.llm_cost,
                model=extraction.llm_model_used,
                processing_time_seconds=extraction.processing_time_seconds,
                employee_id=extraction.employee_id,
            )
        except Exception as e:
            logger.error(
                f"LLM usage logging failed for extraction {extraction_id} "
                f"(phase={ErrorPhase.LLM_LOGGING}): {e}"
            )
            get_metrics_service().record_audit_failure()


_worker: Optional[CVExtractionWorker] = None


def get_cv_extraction_worker() -> CVExtractionWorker:
    global _worker
    if _worker is None:
        _worker = CVExtractionWorker()
    return _worker
