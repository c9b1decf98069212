"""
Tests for the extraction service adapter.

The service is replaced by httpx.MockTransport; no network is used.
"""
import json

import httpx
import pytest

from cv_pipeline.services.extraction_client import (
    ASYNC_ENDPOINT,
    SYNC_ENDPOINT,
    ExtractionServiceClient,
    classify_status_code,
)
from cv_pipeline.services.pipeline_state import ErrorPhase
from cv_pipeline.utils.exceptions import ExtractionServiceError

from tests.conftest import PDF_BYTES, PDF_MIME, SAMPLE_SERVICE_RESPONSE

BASE_URL = "http://extraction.test/api"


def make_client(handler, mode="sync", token="service-token"):
    return ExtractionServiceClient(
        base_url=BASE_URL,
        token=token,
        mode=mode,
        service_name="hr-backend",
        transport=httpx.MockTransport(handler),
    )


class TestClassifyStatusCode:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status_code,phase",
        [
            (401, ErrorPhase.PYTHON_AUTH_FAILED),
            (400, ErrorPhase.PYTHON_BAD_REQUEST),
            (500, ErrorPhase.PYTHON_EXTRACTION),
            (503, ErrorPhase.PYTHON_EXTRACTION),
            (404, ErrorPhase.UNKNOWN),
            (422, ErrorPhase.UNKNOWN),
        ],
    )
    def test_mapping(self, status_code, phase):
        assert classify_status_code(status_code) == phase


class TestSyncExtraction:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_success_returns_structured_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content
            return httpx.Response(200, json=SAMPLE_SERVICE_RESPONSE)

        client = make_client(handler)
        result = await client.extract(PDF_BYTES, "cv.pdf", PDF_MIME, request_id="req-1")

        assert seen["url"] == f"{BASE_URL}{SYNC_ENDPOINT}"
        assert seen["headers"]["Authorization"] == "Bearer service-token"
        assert seen["headers"]["X-Internal-Service"] == "hr-backend"
        assert seen["headers"]["X-Request-ID"] == "req-1"
        assert PDF_BYTES in seen["body"]
        assert result.llm_tokens_used == 1200
        assert result.extraction_cost == pytest.approx(0.0123)
        assert result.llm_model_used == "gpt-4o-mini"
        payload = result.to_extraction_result()
        assert payload["education"][0]["institution_name"] == "Politecnico di Milano"
        assert "llm_tokens_used" not in payload

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_token_no_authorization_header(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json={})

        await make_client(handler, token="").extract(PDF_BYTES, "cv.pdf")
        assert "Authorization" not in seen["headers"]

    @pytest.mark.asyncio
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status_code,phase",
        [
            (500, ErrorPhase.PYTHON_EXTRACTION),
            (401, ErrorPhase.PYTHON_AUTH_FAILED),
            (400, ErrorPhase.PYTHON_BAD_REQUEST),
            (418, ErrorPhase.UNKNOWN),
        ],
    )
    async def test_http_errors_carry_phase(self, status_code, phase):
        client = make_client(lambda request: httpx.Response(status_code, text="nope"))

        with pytest.raises(ExtractionServiceError) as exc_info:
            await client.extract(PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == phase
        assert exc_info.value.status_code == status_code
        assert f"HTTP {status_code}" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        with pytest.raises(ExtractionServiceError) as exc_info:
            await make_client(handler).extract(PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == ErrorPhase.PYTHON_CONNECTION

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ExtractionServiceError) as exc_info:
            await make_client(handler).extract(PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == ErrorPhase.PYTHON_EXTRACTION
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_non_json_body(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(ExtractionServiceError) as exc_info:
            await client.extract(PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == ErrorPhase.UNKNOWN

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_invalid_payload_shape(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"education": "not a list"})
        )

        with pytest.raises(ExtractionServiceError) as exc_info:
            await client.extract(PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == ErrorPhase.PYTHON_EXTRACTION


class TestAsyncExtraction:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_start_extraction_sends_id(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(
                202, json={"success": True, "message": "queued", "extraction_id": "abc"}
            )

        client = make_client(handler, mode="async")
        ack = await client.start_extraction("abc", PDF_BYTES, "cv.pdf", PDF_MIME)

        assert client.is_async
        assert seen["url"] == f"{BASE_URL}{ASYNC_ENDPOINT}"
        assert b'name="extraction_id"' in seen["body"]
        assert b"abc" in seen["body"]
        assert b'name="parallel"' in seen["body"]
        assert ack.success is True
        assert ack.extraction_id == "abc"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_start_extraction_auth_failure(self):
        client = make_client(
            lambda request: httpx.Response(401, content=json.dumps({"detail": "bad token"})),
            mode="async",
        )

        with pytest.raises(ExtractionServiceError) as exc_info:
            await client.start_extraction("abc", PDF_BYTES, "cv.pdf")

        assert exc_info.value.phase == ErrorPhase.PYTHON_AUTH_FAILED
