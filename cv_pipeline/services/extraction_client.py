"""
HTTP client for the external CV extraction service.

Two interaction modes:

- sync: POST /cv-analyzer/analyze-file and wait (up to 8 minutes) for the
  structured result
- async: POST /cv-analyzer/analyze-file-async with the extraction id; the
  service only acknowledges and later writes the result to the
  cv_extractions row itself

Every failure is raised as ExtractionServiceError carrying the error phase
recorded on the extraction.
"""

import time
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError

from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import get_logger
from cv_pipeline.schemas.cv import ExtractionAck, ExtractionServiceResponse
from cv_pipeline.services.metrics import get_metrics_service
from cv_pipeline.services.pipeline_state import ErrorPhase
from cv_pipeline.utils.exceptions import ExtractionServiceError

logger = get_logger(__name__)

SYNC_ENDPOINT = "/cv-analyzer/analyze-file"
ASYNC_ENDPOINT = "/cv-analyzer/analyze-file-async"


def classify_status_code(status_code: int) -> str:
    """Map an HTTP error status from the extraction service to an error phase."""
    if status_code == 401:
        return ErrorPhase.PYTHON_AUTH_FAILED
    if status_code == 400:
        return ErrorPhase.PYTHON_BAD_REQUEST
    if status_code >= 500:
        return ErrorPhase.PYTHON_EXTRACTION
    return ErrorPhase.UNKNOWN


class ExtractionServiceClient:
    """Outbound adapter to the extraction service"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        mode: Optional[str] = None,
        service_name: Optional[str] = None,
        sync_timeout: Optional[float] = None,
        async_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PYTHON_API_URL).rstrip("/")
        self.token = token if token is not None else settings.PYTHON_API_TOKEN
        self.mode = (mode or settings.CV_EXTRACTION_MODE).lower()
        self.service_name = service_name or settings.SERVICE_NAME
        self.sync_timeout = sync_timeout or settings.CV_EXTRACTION_SYNC_TIMEOUT_SECONDS
        self.async_timeout = (
            async_timeout or settings.CV_EXTRACTION_ASYNC_TIMEOUT_SECONDS
        )
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    @property
    def is_async(self) -> bool:
        return self.mode == "async"

    def _headers(self, request_id: str) -> Dict[str, str]:
        headers = {
            "X-Internal-Service": self.service_name,
            "X-Request-ID": request_id,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _post(
        self,
        endpoint: str,
        timeout: float,
        content: bytes,
        filename: str,
        mime_type: str,
        data: Optional[Dict[str, str]] = None,
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        request_id = request_id or str(uuid4())
        url = f"{self.base_url}{endpoint}"
        files = {"file": (filename, content, mime_type)}
        mode = "async" if endpoint == ASYNC_ENDPOINT else "sync"
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(
                timeout=timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url, files=files, data=data, headers=self._headers(request_id)
                )
                response.raise_for_status()
                body = response.json()
        except httpx.ConnectError as e:
            raise self._failure(
                mode, start, ErrorPhase.PYTHON_CONNECTION,
                f"Cannot connect to extraction service: {e}",
            ) from e
        except httpx.TimeoutException as e:
            raise self._failure(
                mode, start, ErrorPhase.PYTHON_EXTRACTION,
                f"Extraction service timed out after {timeout:.0f}s",
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise self._failure(
                mode, start, classify_status_code(status_code),
                f"Extraction service returned HTTP {status_code}: {e.response.text[:500]}",
                status_code=status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise self._failure(
                mode, start, ErrorPhase.UNKNOWN,
                f"Extraction service call failed: {e}",
            ) from e

        duration = time.monotonic() - start
        get_metrics_service().record_extraction_call(mode, "success", duration)
        logger.info(
            "Extraction service call succeeded",
            endpoint=endpoint,
            request_id=request_id,
            duration_seconds=round(duration, 2),
        )
        if not isinstance(body, dict):
            raise ExtractionServiceError(
                "Extraction service returned a non-object body", ErrorPhase.UNKNOWN
            )
        return body

    def _failure(
        self,
        mode: str,
        start: float,
        phase: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> ExtractionServiceError:
        get_metrics_service().record_extraction_call(
            mode, phase, time.monotonic() - start
        )
        logger.warning(
            "Extraction service call failed",
            mode=mode,
            phase=phase,
            status_code=status_code,
            error=message,
        )
        return ExtractionServiceError(message, phase, status_code)

    async def extract(
        self,
        content: bytes,
        filename: str,
        mime_type: str = "application/pdf",
        request_id: Optional[str] = None,
    ) -> ExtractionServiceResponse:
        """Synchronous extraction: returns the structured result."""
        body = await self._post(
            SYNC_ENDPOINT,
            self.sync_timeout,
            content,
            filename,
            mime_type,
            request_id=request_id,
        )
        try:
            return ExtractionServiceResponse.model_validate(body)
        except PydanticValidationError as e:
            raise ExtractionServiceError(
                f"Unexpected extraction service payload: {e.error_count()} invalid fields",
                ErrorPhase.PYTHON_EXTRACTION,
            ) from e

    async def start_extraction(
        self,
        extraction_id: str,
        content: bytes,
        filename: str,
        mime_type: str = "application/pdf",
        request_id: Optional[str] = None,
    ) -> ExtractionAck:
        """Asynchronous extraction: the service only acknowledges."""
        body = await self._post(
            ASYNC_ENDPOINT,
            self.async_timeout,
            content,
            filename,
            mime_type,
            data={"extraction_id": str(extraction_id), "parallel": "true"},
            request_id=request_id,
        )
        return ExtractionAck.model_validate(body)


_extraction_client: Optional[ExtractionServiceClient] = None


def get_extraction_client() -> ExtractionServiceClient:
    global _extraction_client
    if _extraction_client is None:
        _extraction_client = ExtractionServiceClient()
    return _extraction_client
