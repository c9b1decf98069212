"""
Tests for the internal service-to-service routes.

Every request is signed with the shared secret the way a calling service
would sign it.
"""
import time

import pytest
from sqlalchemy import select

from cv_pipeline.core.config import settings
from cv_pipeline.core.security import INTERNAL_SIGNATURE_HEADER, sign_internal_request
from cv_pipeline.models import LLMUsageLog

from tests.conftest import auth_headers

LOG_PATH = "/api/internal/llm-usage-log"

VALID_ENTRY = {
    "tenantId": "tenant-acme",
    "operationType": "job_matching",
    "provider": "openai",
    "model": "gpt-4o",
    "usage": {"prompt_tokens": 1000, "completion_tokens": 200},
    "responseTime": 850,
    "entityType": "job",
    "entityId": 12,
    "preCalculatedCost": 0.0045,
}


def signed(method: str, path: str, **kwargs):
    return sign_internal_request(method, path, service="matching-service", **kwargs)


class TestInternalAuthentication:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unsigned_request_rejected(self, async_client):
        response = await async_client.post(LOG_PATH, json=VALID_ENTRY)

        assert response.status_code == 401
        assert response.json()["error"] == "unauth"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_bad_signature_rejected(self, async_client):
        headers = signed("POST", LOG_PATH)
        headers[INTERNAL_SIGNATURE_HEADER] = "0" * 64

        response = await async_client.post(LOG_PATH, json=VALID_ENTRY, headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_signature_for_other_path_rejected(self, async_client):
        headers = signed("POST", "/api/internal/health")

        response = await async_client.post(LOG_PATH, json=VALID_ENTRY, headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_stale_timestamp_rejected(self, async_client):
        stale = int(time.time() * 1000) - (settings.INTERNAL_AUTH_MAX_SKEW_SECONDS + 60) * 1000

        response = await async_client.post(
            LOG_PATH, json=VALID_ENTRY, headers=signed("POST", LOG_PATH, timestamp_ms=stale)
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_non_numeric_timestamp_rejected(self, async_client):
        headers = signed("POST", LOG_PATH)
        headers["X-Internal-Timestamp"] = "yesterday"

        response = await async_client.post(LOG_PATH, json=VALID_ENTRY, headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unconfigured_secret_rejects_everything(self, async_client, monkeypatch):
        headers = signed("POST", LOG_PATH)
        monkeypatch.setattr(settings, "INTERNAL_API_SECRET", None)

        response = await async_client.post(LOG_PATH, json=VALID_ENTRY, headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_user_jwt_is_not_enough(self, async_client):
        response = await async_client.post(LOG_PATH, json=VALID_ENTRY, headers=auth_headers())

        assert response.status_code == 401


class TestLLMUsageLog:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_entry_created(self, async_client, session_factory):
        response = await async_client.post(
            LOG_PATH, json=VALID_ENTRY, headers=signed("POST", LOG_PATH)
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True

        async with session_factory() as db:
            entry = (await db.execute(select(LLMUsageLog))).scalar_one()
        assert str(entry.id) == body["log_id"]
        assert entry.estimated_cost == pytest.approx(0.0045)
        assert entry.total_tokens == 1200
        assert entry.entity_id == "12"
        assert entry.metadata_["source_service"] == "matching-service"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_missing_fields(self, async_client):
        entry = {k: v for k, v in VALID_ENTRY.items() if k not in ("provider", "model")}

        response = await async_client.post(LOG_PATH, json=entry, headers=signed("POST", LOG_PATH))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"]["missing"] == ["provider", "model"]

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unknown_status(self, async_client, session_factory):
        entry = {**VALID_ENTRY, "status": "totally-bogus"}

        response = await async_client.post(LOG_PATH, json=entry, headers=signed("POST", LOG_PATH))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert "rate_limited" in body["details"]["allowed_statuses"]
        async with session_factory() as db:
            assert (await db.execute(select(LLMUsageLog))).first() is None

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_audit_disabled(self, async_client, monkeypatch):
        monkeypatch.setattr(settings, "LLM_AUDIT_ENABLED", False)

        response = await async_client.post(
            LOG_PATH, json=VALID_ENTRY, headers=signed("POST", LOG_PATH)
        )

        assert response.status_code == 503


class TestUsageViews:

    @pytest.fixture
    def seeded(self, audit_service):
        async def _seed():
            await audit_service.log_usage(
                tenant_id="tenant-acme", operation_type="cv_extraction_complete",
                provider="openai", model="gpt-4o-mini",
                usage={"total_tokens": 1000}, pre_calculated_cost=0.3,
            )
            await audit_service.log_usage(
                tenant_id="tenant-globex", operation_type="job_matching",
                provider="openai", model="gpt-4o",
                usage={"total_tokens": 500}, pre_calculated_cost=0.1,
            )
            await audit_service.log_usage(
                tenant_id="tenant-globex", operation_type="job_matching",
                provider="openai", model="gpt-4o",
                status="timeout", error_message="upstream timeout",
            )

        return _seed

    async def get(self, client, path, **params):
        return await client.get(path, params=params, headers=signed("GET", path))

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_summary(self, async_client, seeded):
        await seeded()

        response = await self.get(async_client, "/api/internal/llm-usage/summary")

        assert response.status_code == 200
        body = response.json()
        assert body["total_cost"] == pytest.approx(0.4)
        assert body["total_calls"] == 2

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_summary_for_tenant(self, async_client, seeded):
        await seeded()

        body = (
            await self.get(async_client, "/api/internal/llm-usage/summary", tenant_id="tenant-acme")
        ).json()

        assert body["total_cost"] == pytest.approx(0.3)
        assert body["by_operation"][0]["operation_type"] == "cv_extraction_complete"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_failed(self, async_client, seeded):
        await seeded()

        body = (await self.get(async_client, "/api/internal/llm-usage/failed")).json()

        assert len(body) == 1
        assert body[0]["status"] == "timeout"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_top_tenants(self, async_client, seeded):
        await seeded()

        body = (await self.get(async_client, "/api/internal/llm-usage/top-tenants", limit=1)).json()

        assert [t["tenant_id"] for t in body["top_tenants"]] == ["tenant-acme"]
        assert body["total_cost_all_tenants"] == pytest.approx(0.4)

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_trends(self, async_client, seeded):
        await seeded()

        body = (
            await self.get(async_client, "/api/internal/llm-usage/trends", granularity="month")
        ).json()

        assert body["granularity"] == "month"
        assert sum(bucket["total_calls"] for bucket in body["trends"]) == 2

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_trends_rejects_unknown_granularity(self, async_client):
        response = await self.get(async_client, "/api/internal/llm-usage/trends", granularity="hour")
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_kpis(self, async_client, seeded):
        await seeded()

        body = (await self.get(async_client, "/api/internal/llm-usage/kpis")).json()

        assert body["total_calls"] == 2
        assert body["active_tenants"] == 2


class TestInternalHealth:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_health_reports_components(self, async_client):
        path = "/api/internal/health"

        response = await async_client.get(path, headers=signed("GET", path))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["storage"]["writable"] is True
        assert body["worker"]["enabled"] is False
        assert body["worker"]["running"] is False

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_health_requires_signature(self, async_client):
        response = await async_client.get("/api/internal/health")
        assert response.status_code == 401
