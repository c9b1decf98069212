"""
End-to-end tests for the CV extraction worker.

The extraction service is replaced by httpx.MockTransport; the database
is the per-test SQLite file, shared by every session the worker opens.
"""
import asyncio
import copy
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cv_pipeline.models import (
    EmployeeEducation,
    EmployeeSkill,
    EmployeeWorkExperience,
    LLMUsageLog,
)
from cv_pipeline.services.cv_importer import CVImporter
from cv_pipeline.services.extraction_client import ExtractionServiceClient
from cv_pipeline.services.llm_audit import LLMAuditService
from cv_pipeline.services.pipeline_state import ErrorPhase, ExtractionStatus, transition
from cv_pipeline.workers.cv_extraction_worker import CVExtractionWorker

from tests.conftest import SAMPLE_EXTRACTION, SAMPLE_SERVICE_RESPONSE


def service_ok(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("analyze-file-async"):
        return httpx.Response(202, json={"success": True, "message": "queued"})
    return httpx.Response(200, json=SAMPLE_SERVICE_RESPONSE)


def service_down(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="internal error")


@pytest.fixture
def make_worker(session_factory, storage, audit_service):
    def _make(handler=service_ok, mode="sync", audit=None, **kwargs):
        client = ExtractionServiceClient(
            base_url="http://extraction.test/api",
            token="service-token",
            mode=mode,
            transport=httpx.MockTransport(handler),
        )
        kwargs.setdefault("max_retries", 3)
        return CVExtractionWorker(
            session_factory=session_factory,
            storage=storage,
            client=client,
            audit=audit or audit_service,
            poll_interval=0.01,
            **kwargs,
        )

    return _make


def flaky_import(failures: int):
    """Run the real import, then fail the commit-bound transaction N times."""
    original = CVImporter.import_extraction
    calls = {"count": 0}

    async def _import(self, extraction_id):
        stats = await original(self, extraction_id)
        calls["count"] += 1
        if calls["count"] <= failures:
            raise OperationalError(
                "UPDATE cv_extractions", {}, Exception("could not serialize access")
            )
        return stats

    return _import


async def count_rows(session_factory, model, **filters):
    async with session_factory() as db:
        stmt = select(func.count()).select_from(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return (await db.execute(stmt)).scalar_one()


class TestSyncMode:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_happy_path_in_one_tick(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        worker = make_worker()

        counts = await worker.run_once()

        assert counts == {"reaped": 0, "started": 1, "imported": 1}
        record = await get_extraction(extraction.id)
        assert record.status == "completed"
        assert record.retry_count == 0
        assert record.llm_tokens_used == 1200
        assert record.llm_cost == pytest.approx(0.0123)
        assert record.llm_model_used == "gpt-4o-mini"
        assert record.extracted_text.startswith("Giulia Bianchi")
        assert record.import_stats["created"]["work_experience"] == 2

        assert await count_rows(session_factory, EmployeeWorkExperience, employee_id=employee.id) == 2

        async with session_factory() as db:
            entries = (await db.execute(select(LLMUsageLog))).scalars().all()
        assert len(entries) == 1
        assert entries[0].operation_type == "cv_extraction_complete"
        assert entries[0].entity_id == str(extraction.id)
        assert entries[0].estimated_cost == pytest.approx(0.0123)
        assert entries[0].total_tokens == 1200

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unreported_cost_falls_back_to_price_table(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        body = {
            k: v for k, v in SAMPLE_SERVICE_RESPONSE.items() if k != "extraction_cost"
        }
        body["llm_model_used"] = "gpt-4o"

        def service_without_cost(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=body)

        extraction = await make_extraction(employee)
        worker = make_worker(handler=service_without_cost)

        await worker.run_once()

        record = await get_extraction(extraction.id)
        assert record.status == "completed"
        assert record.llm_cost is None

        async with session_factory() as db:
            entry = (await db.execute(select(LLMUsageLog))).scalar_one()
        assert entry.total_tokens == 1200
        # 1080 prompt tokens at 2.50/M plus 120 completion tokens at 10.00/M
        assert entry.estimated_cost == pytest.approx(0.0039)

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_extraction_service_error(
        self, make_worker, employee, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        worker = make_worker(handler=service_down)

        await worker.run_once()

        record = await get_extraction(extraction.id)
        assert record.status == "failed"
        assert record.error_phase == ErrorPhase.PYTHON_EXTRACTION
        assert "HTTP 500" in record.error_message
        assert record.retry_count == 0
        assert await count_rows(session_factory, EmployeeEducation) == 0
        assert await count_rows(session_factory, LLMUsageLog) == 0

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_import_retried_until_it_succeeds(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        worker = make_worker()

        with patch.object(CVImporter, "import_extraction", flaky_import(failures=2)):
            await worker.run_once()
            assert (await get_extraction(extraction.id)).status == "extracted"
            await worker.run_once()
            await worker.run_once()

        record = await get_extraction(extraction.id)
        assert record.status == "completed"
        assert record.retry_count == 2
        assert worker.stats["retried"] == 2
        # Rolled-back attempts leave nothing behind
        assert await count_rows(session_factory, EmployeeEducation) == 1
        assert await count_rows(session_factory, EmployeeWorkExperience) == 2
        assert await count_rows(session_factory, EmployeeSkill) == 2
        assert await count_rows(session_factory, LLMUsageLog) == 1

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_import_fails_after_max_retries(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        worker = make_worker()

        with patch.object(CVImporter, "import_extraction", flaky_import(failures=100)):
            for _ in range(6):
                await worker.run_once()

        record = await get_extraction(extraction.id)
        assert record.status == "failed"
        assert record.retry_count == 3
        assert record.error_phase == ErrorPhase.DATABASE_SAVE
        assert record.error_message.startswith("Worker failed after 3 retries")
        assert await count_rows(session_factory, EmployeeEducation) == 0
        assert await count_rows(session_factory, LLMUsageLog) == 0

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_audit_failure_does_not_change_outcome(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        audit = AsyncMock(spec=LLMAuditService)
        audit.log_extraction_complete.side_effect = RuntimeError("audit table locked")
        worker = make_worker(audit=audit)

        await worker.run_once()

        assert (await get_extraction(extraction.id)).status == "completed"
        audit.log_extraction_complete.assert_awaited_once()
        assert await count_rows(session_factory, LLMUsageLog) == 0


class TestAsyncMode:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_handoff_then_import_on_next_tick(
        self, make_worker, employee, catalog, make_extraction, get_extraction, session_factory
    ):
        extraction = await make_extraction(employee)
        worker = make_worker(mode="async")

        counts = await worker.run_once()

        assert counts["started"] == 1
        assert counts["imported"] == 0
        assert (await get_extraction(extraction.id)).status == "processing"

        # The extraction service writes its result directly
        async with session_factory() as db:
            assert await transition(
                db,
                extraction.id,
                ExtractionStatus.PROCESSING,
                ExtractionStatus.EXTRACTED,
                {
                    "extraction_result": copy.deepcopy(SAMPLE_EXTRACTION),
                    "llm_tokens_used": 800,
                    "llm_cost": 0.004,
                    "llm_model_used": "gpt-4o-mini",
                },
            )
            await db.commit()

        counts = await worker.run_once()

        assert counts["imported"] == 1
        assert (await get_extraction(extraction.id)).status == "completed"
        async with session_factory() as db:
            entry = (await db.execute(select(LLMUsageLog))).scalar_one()
        assert entry.estimated_cost == pytest.approx(0.004)
        assert entry.total_tokens == 800

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_handoff_failure_fails_record(
        self, make_worker, employee, make_extraction, get_extraction
    ):
        extraction = await make_extraction(employee)
        worker = make_worker(
            handler=lambda request: httpx.Response(401, text="bad token"), mode="async"
        )

        await worker.run_once()

        record = await get_extraction(extraction.id)
        assert record.status == "failed"
        assert record.error_phase == ErrorPhase.PYTHON_AUTH_FAILED


class TestReaperAndLifecycle:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_stuck_processing_is_reaped(
        self, make_worker, employee, make_extraction, get_extraction
    ):
        stuck = await make_extraction(employee, status="processing", age_seconds=120)
        fresh = await make_extraction(employee, status="processing")
        worker = make_worker(processing_deadline=60)

        counts = await worker.run_once()

        assert counts["reaped"] == 1
        record = await get_extraction(stuck.id)
        assert record.status == "failed"
        assert record.error_phase == ErrorPhase.PYTHON_EXTRACTION
        assert "timed out" in record.error_message
        assert (await get_extraction(fresh.id)).status == "processing"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_terminal_records_are_left_alone(
        self, make_worker, employee, make_extraction, get_extraction
    ):
        done = await make_extraction(employee, status="completed", age_seconds=5000)
        failed = await make_extraction(employee, status="failed", age_seconds=5000)
        worker = make_worker(processing_deadline=60)

        assert await worker.run_once() == {"reaped": 0, "started": 0, "imported": 0}
        assert (await get_extraction(done.id)).status == "completed"
        assert (await get_extraction(failed.id)).status == "failed"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_stop_requested_skips_new_records(
        self, make_worker, employee, make_extraction, get_extraction
    ):
        extraction = await make_extraction(employee)
        worker = make_worker()
        worker.request_stop()

        counts = await worker.run_once()

        assert counts["started"] == 0
        assert (await get_extraction(extraction.id)).status == "pending"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_start_and_stop(
        self, make_worker, employee, catalog, make_extraction, get_extraction
    ):
        extraction = await make_extraction(employee)
        worker = make_worker()

        await worker.start()
        assert worker.is_running
        for _ in range(200):
            if (await get_extraction(extraction.id)).status == "completed":
                break
            await asyncio.sleep(0.02)
        await worker.stop()

        assert not worker.is_running
        assert (await get_extraction(extraction.id)).status == "completed"
        assert worker.stats["ticks"] >= 1
