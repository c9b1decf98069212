"""
LLM Usage API Endpoints

Internal endpoints used by other platform services to append LLM usage
entries and to read the aggregated views. All routes require a signed
internal request (see core/security.py).
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import get_logger
from cv_pipeline.core.security import verify_internal_request
from cv_pipeline.db.database import get_db
from cv_pipeline.models.llm_usage_log import LLMUsageLog
from cv_pipeline.schemas.llm_usage import LLMUsageLogRequest, LLMUsageLogResponse
from cv_pipeline.services.llm_audit import (
    LLMAuditService,
    LLMUsageAnalytics,
    get_llm_audit_service,
)
from cv_pipeline.utils.exceptions import CustomHTTPException, ValidationError

logger = get_logger(__name__)

router = APIRouter(tags=["LLM Usage"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post(
    "/llm-usage-log",
    response_model=LLMUsageLogResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_llm_usage_log(
    request: LLMUsageLogRequest,
    service_name: str = Depends(verify_internal_request),
    audit: LLMAuditService = Depends(get_llm_audit_service),
):
    """Append one LLM usage entry on behalf of an internal service."""
    missing = request.missing_fields()
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    if not request.status_is_valid():
        raise ValidationError(
            f"Invalid status: {request.status}",
            details={"allowed_statuses": list(LLMUsageLog.STATUSES)},
        )

    if not settings.LLM_AUDIT_ENABLED:
        raise CustomHTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="audit_disabled",
            detail="LLM usage logging is disabled",
        )

    entry = await audit.log_usage(
        tenant_id=request.tenantId,
        operation_type=request.operationType,
        provider=request.provider,
        model=request.model,
        usage=request.usage.model_dump() if request.usage else None,
        status=request.status,
        response_time_ms=request.responseTime,
        request_params=request.requestParams,
        response_summary=request.responseSummary,
        entity_type=request.entityType,
        entity_id=request.entityId,
        user_id=request.userId,
        request_id=request.requestId,
        parent_operation_id=request.parentOperationId,
        error_message=request.errorMessage,
        metadata={**(request.metadata or {}), "source_service": service_name},
        pre_calculated_cost=request.preCalculatedCost,
    )
    if entry is None:
        raise CustomHTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="audit_write_failed",
            detail="Failed to write LLM usage entry",
        )

    return LLMUsageLogResponse(success=True, log_id=str(entry.id))


@router.get("/llm-usage/summary")
async def get_cost_summary(
    tenant_id: Optional[str] = Query(None, description="Restrict to one tenant"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service_name: str = Depends(verify_internal_request),
    db: AsyncSession = Depends(get_db),
):
    """Totals with breakdowns by operation and by model."""
    return await LLMUsageAnalytics(db).get_cost_summary(
        tenant_id=tenant_id,
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
    )


@router.get("/llm-usage/failed")
async def get_failed_operations(
    tenant_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    service_name: str = Depends(verify_internal_request),
    db: AsyncSession = Depends(get_db),
):
    return await LLMUsageAnalytics(db).get_failed_operations(tenant_id=tenant_id, limit=limit)


@router.get("/llm-usage/top-tenants")
async def get_top_tenants(
    limit: int = Query(10, ge=1, le=100),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service_name: str = Depends(verify_internal_request),
    db: AsyncSession = Depends(get_db),
):
    return await LLMUsageAnalytics(db).get_top_tenant_spenders(
        limit=limit,
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
    )


@router.get("/llm-usage/trends")
async def get_trends(
    granularity: str = Query("day", pattern="^(day|week|month)$"),
    tenant_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service_name: str = Depends(verify_internal_request),
    db: AsyncSession = Depends(get_db),
):
    """
    Cost, tokens and calls over time.

    **Granularity:** `day` (default), `week` or `month`. Without dates the
    last 30 days are returned.
    """
    return await LLMUsageAnalytics(db).get_trends(
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
        granularity=granularity,
        tenant_id=tenant_id,
    )


@router.get("/llm-usage/kpis")
async def get_global_kpis(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    service_name: str = Depends(verify_internal_request),
    db: AsyncSession = Depends(get_db),
):
    return await LLMUsageAnalytics(db).get_global_kpis(
        start_date=_naive_utc(start_date),
        end_date=_naive_utc(end_date),
    )
