"""
LLM Audit Service

Append-only log of every external LLM call made for the CV pipeline, plus
the aggregation views read by the internal usage routes.

Writes are best-effort: a failed write is logged with phase ``llm_logging``,
counted in metrics and dropped, and the operation that triggered it carries
on. An unknown status is a caller bug and raises ``ValueError``.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.config import settings
from cv_pipeline.core.logging import get_logger
from cv_pipeline.db.database import async_session_factory, utc_now
from cv_pipeline.models.llm_usage_log import LLMUsageLog
from cv_pipeline.services.metrics import get_metrics_service
from cv_pipeline.services.pipeline_state import ErrorPhase
from cv_pipeline.services.pricing import calculate_cost

logger = get_logger(__name__)

CV_EXTRACTION_ENTITY = "cv_extraction"
CV_EXTRACTION_OPERATION = "cv_extraction_complete"
AuditStatus = Literal["success", "failed", "timeout", "rate_limited"]
AUDIT_STATUSES = LLMUsageLog.STATUSES
FAILED_STATUSES = ("failed", "timeout", "rate_limited")

# Share of total tokens attributed to the prompt when only a total is known
PROMPT_TOKEN_SHARE = 0.9


class LLMAuditService:
    """
    Writes LLM usage entries.

    Each write runs in its own session so an audit failure can never roll
    back the caller's transaction.
    """

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    async def log_usage(
        self,
        tenant_id: str,
        operation_type: str,
        provider: str,
        model: str,
        usage: Optional[Dict[str, int]] = None,
        status: AuditStatus = "success",
        response_time_ms: Optional[int] = None,
        request_params: Optional[Dict[str, Any]] = None,
        response_summary: Optional[Dict[str, Any]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        request_id: Optional[str] = None,
        parent_operation_id: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        pre_calculated_cost: Optional[float] = None,
    ) -> Optional[LLMUsageLog]:
        """
        Log one LLM call.

        Args:
            tenant_id: Tenant the call is billed to
            operation_type: Free label, e.g. 'cv_extraction_complete'
            provider: LLM provider ('openai', 'anthropic', 'google', ...)
            model: Model name
            usage: {prompt_tokens, completion_tokens, total_tokens}
            status: 'success', 'failed', 'timeout' or 'rate_limited'
            response_time_ms: Latency of the call
            entity_type: Type of the entity the call was made for
            entity_id: Id of that entity
            pre_calculated_cost: Authoritative cost in USD reported by the
                caller; stored verbatim when given

        Returns:
            The created entry, or None when the write failed or auditing
            is disabled

        Raises:
            ValueError: status is not one of AUDIT_STATUSES
        """
        if status not in AUDIT_STATUSES:
            raise ValueError(f"Unknown LLM usage status: {status!r}")

        if not settings.LLM_AUDIT_ENABLED:
            logger.debug("LLM audit disabled, entry dropped", operation=operation_type)
            return None

        try:
            usage = usage or {}
            prompt_tokens = int(usage.get("prompt_tokens") or 0)
            completion_tokens = int(usage.get("completion_tokens") or 0)
            total_tokens = int(
                usage.get("total_tokens") or (prompt_tokens + completion_tokens)
            )

            if pre_calculated_cost is not None:
                estimated_cost = float(pre_calculated_cost)
            else:
                estimated_cost = calculate_cost(
                    provider, model, prompt_tokens, completion_tokens
                )

            entry = LLMUsageLog(
                tenant_id=str(tenant_id),
                operation_type=operation_type,
                provider=provider,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
                estimated_cost=estimated_cost,
                status=status,
                response_time_ms=response_time_ms,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                user_id=str(user_id) if user_id is not None else None,
                request_id=request_id or str(uuid4()),
                parent_operation_id=parent_operation_id,
                error_message=error_message,
                metadata_=metadata,
                request_params=request_params,
                response_summary=response_summary,
            )

            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()

            get_metrics_service().record_audit_entry(
                provider, model, status, estimated_cost
            )
            logger.info(
                "LLM usage logged",
                operation=operation_type,
                provider=provider,
                model=model,
                total_tokens=total_tokens,
                cost=estimated_cost,
                status=status,
            )
            return entry

        except Exception as e:
            logger.error(
                "Failed to log LLM usage",
                phase=ErrorPhase.LLM_LOGGING,
                error=str(e),
                tenant_id=tenant_id,
                operation=operation_type,
                provider=provider,
                model=model,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
            )
            get_metrics_service().record_audit_failure()
            return None

    async def has_entry(
        self, entity_type: str, entity_id: Any, operation_type: Optional[str] = None
    ) -> bool:
        """True when an entry already references the given entity."""
        stmt = select(LLMUsageLog.id).where(
            LLMUsageLog.entity_type == entity_type,
            LLMUsageLog.entity_id == str(entity_id),
        )
        if operation_type:
            stmt = stmt.where(LLMUsageLog.operation_type == operation_type)
        async with self.session_factory() as session:
            result = await session.execute(stmt.limit(1))
            return result.scalar_one_or_none() is not None

    async def log_extraction_complete(
        self,
        extraction_id: Any,
        tenant_id: str,
        tokens_used: Optional[int],
        cost: Optional[float],
        model: Optional[str],
        processing_time_seconds: Optional[float] = None,
        user_id: Optional[Any] = None,
        employee_id: Optional[int] = None,
    ) -> Optional[LLMUsageLog]:
        """
        Log the extraction service's LLM usage for one extraction, once.

        The service reports only a token total, which is split 90/10 between
        prompt and completion. Its reported cost is authoritative.
        """
        try:
            if await self.has_entry(
                CV_EXTRACTION_ENTITY, extraction_id, CV_EXTRACTION_OPERATION
            ):
                logger.debug(
                    "LLM usage already logged for extraction",
                    extraction_id=str(extraction_id),
                )
                return None
        except Exception as e:
            logger.error(
                "Failed to check existing LLM usage entry",
                phase=ErrorPhase.LLM_LOGGING,
                extraction_id=str(extraction_id),
                error=str(e),
            )
            get_metrics_service().record_audit_failure()
            return None

        total = int(tokens_used or 0)
        prompt_tokens = int(total * PROMPT_TOKEN_SHARE)
        response_time_ms = (
            int(processing_time_seconds * 1000)
            if processing_time_seconds is not None
            else None
        )

        return await self.log_usage(
            tenant_id=tenant_id,
            operation_type=CV_EXTRACTION_OPERATION,
            provider=settings.LLM_DEFAULT_PROVIDER,
            model=model or "unknown",
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": total - prompt_tokens,
                "total_tokens": total,
            },
            status="success",
            response_time_ms=response_time_ms,
            entity_type=CV_EXTRACTION_ENTITY,
            entity_id=extraction_id,
            user_id=user_id,
            metadata={"employee_id": employee_id, "source": "cv_worker"},
            pre_calculated_cost=cost,
        )


def _period_filter(stmt, start_date: Optional[datetime], end_date: Optional[datetime]):
    if start_date:
        stmt = stmt.where(LLMUsageLog.created_at >= start_date)
    if end_date:
        stmt = stmt.where(LLMUsageLog.created_at <= end_date)
    return stmt


def _pct_change(current: float, previous: float) -> float:
    if not previous:
        return 0
    return round((current - previous) / previous * 100, 2)


def _bucket(ts: datetime, granularity: str) -> str:
    if granularity == "month":
        return ts.strftime("%Y-%m-01")
    if granularity == "week":
        # ISO week, bucketed on its Monday
        return (ts - timedelta(days=ts.weekday())).strftime("%Y-%m-%d")
    return ts.strftime("%Y-%m-%d")


class LLMUsageAnalytics:
    """Read-side aggregation views over llm_usage_logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _totals(self, start_date=None, end_date=None, tenant_id=None):
        stmt = select(
            func.coalesce(func.sum(LLMUsageLog.estimated_cost), 0),
            func.coalesce(func.sum(LLMUsageLog.total_tokens), 0),
            func.count(LLMUsageLog.id),
            func.count(func.distinct(LLMUsageLog.tenant_id)),
        ).where(LLMUsageLog.status == "success")
        if tenant_id:
            stmt = stmt.where(LLMUsageLog.tenant_id == tenant_id)
        stmt = _period_filter(stmt, start_date, end_date)
        cost, tokens, calls, tenants = (await self.db.execute(stmt)).one()
        return float(cost or 0), int(tokens or 0), int(calls or 0), int(tenants or 0)

    async def get_cost_summary(
        self,
        tenant_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Successful-call totals, grouped by operation and by model."""
        total_cost, total_tokens, total_calls, _ = await self._totals(
            start_date, end_date, tenant_id
        )

        cost_sum = func.coalesce(func.sum(LLMUsageLog.estimated_cost), 0)

        by_operation_stmt = select(
            LLMUsageLog.operation_type,
            cost_sum.label("cost"),
            func.coalesce(func.sum(LLMUsageLog.total_tokens), 0).label("tokens"),
            func.count(LLMUsageLog.id).label("calls"),
        ).where(LLMUsageLog.status == "success")
        by_model_stmt = select(
            LLMUsageLog.provider,
            LLMUsageLog.model,
            cost_sum.label("cost"),
            func.coalesce(func.sum(LLMUsageLog.total_tokens), 0).label("tokens"),
            func.count(LLMUsageLog.id).label("calls"),
        ).where(LLMUsageLog.status == "success")
        if tenant_id:
            by_operation_stmt = by_operation_stmt.where(LLMUsageLog.tenant_id == tenant_id)
            by_model_stmt = by_model_stmt.where(LLMUsageLog.tenant_id == tenant_id)
        by_operation_stmt = _period_filter(by_operation_stmt, start_date, end_date)
        by_model_stmt = _period_filter(by_model_stmt, start_date, end_date)

        by_operation = await self.db.execute(
            by_operation_stmt.group_by(LLMUsageLog.operation_type).order_by(desc("cost"))
        )
        by_model = await self.db.execute(
            by_model_stmt.group_by(LLMUsageLog.provider, LLMUsageLog.model).order_by(
                desc("cost")
            )
        )

        return {
            "total_cost": total_cost,
            "total_tokens": total_tokens,
            "total_calls": total_calls,
            "by_operation": [
                {
                    "operation_type": row.operation_type,
                    "total_cost": float(row.cost or 0),
                    "total_tokens": int(row.tokens or 0),
                    "total_calls": row.calls,
                }
                for row in by_operation
            ],
            "by_model": [
                {
                    "provider": row.provider,
                    "model": row.model,
                    "total_cost": float(row.cost or 0),
                    "total_tokens": int(row.tokens or 0),
                    "total_calls": row.calls,
                }
                for row in by_model
            ],
            "period": {"start": start_date, "end": end_date},
        }

    async def get_failed_operations(
        self, tenant_id: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Most recent failed, timed-out or rate-limited calls."""
        stmt = select(LLMUsageLog).where(LLMUsageLog.status.in_(FAILED_STATUSES))
        if tenant_id:
            stmt = stmt.where(LLMUsageLog.tenant_id == tenant_id)
        stmt = stmt.order_by(LLMUsageLog.created_at.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return [
            {
                "id": str(entry.id),
                "tenant_id": entry.tenant_id,
                "operation_type": entry.operation_type,
                "provider": entry.provider,
                "model": entry.model,
                "status": entry.status,
                "error_message": entry.error_message,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "response_time_ms": entry.response_time_ms,
                "timestamp": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in result.scalars().all()
        ]

    async def get_top_tenant_spenders(
        self,
        limit: int = 10,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Tenants ranked by successful-call cost, with their share of the total."""
        total_cost, _, _, _ = await self._totals(start_date, end_date)

        stmt = select(
            LLMUsageLog.tenant_id,
            func.coalesce(func.sum(LLMUsageLog.estimated_cost), 0).label("cost"),
            func.coalesce(func.sum(LLMUsageLog.total_tokens), 0).label("tokens"),
            func.count(LLMUsageLog.id).label("calls"),
        ).where(LLMUsageLog.status == "success")
        stmt = _period_filter(stmt, start_date, end_date)
        stmt = stmt.group_by(LLMUsageLog.tenant_id).order_by(desc("cost")).limit(limit)
        result = await self.db.execute(stmt)

        top_tenants = []
        for rank, row in enumerate(result, start=1):
            cost = float(row.cost or 0)
            calls = row.calls or 0
            top_tenants.append(
                {
                    "rank": rank,
                    "tenant_id": row.tenant_id,
                    "total_cost": cost,
                    "total_tokens": int(row.tokens or 0),
                    "total_calls": calls,
                    "percentage_of_total": round(cost / total_cost * 100, 2)
                    if total_cost > 0
                    else 0,
                    "avg_cost_per_call": round(cost / calls, 4) if calls else 0,
                }
            )

        return {
            "top_tenants": top_tenants,
            "total_cost_all_tenants": total_cost,
            "period": {"start": start_date, "end": end_date},
        }

    async def get_trends(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        granularity: str = "day",
        tenant_id: Optional[str] = None,
        include_top_tenants: bool = True,
    ) -> Dict[str, Any]:
        """
        Successful-call cost, tokens and calls bucketed by day, week or month.

        Buckets are computed in Python so the same query works on SQLite and
        PostgreSQL. Without a tenant filter, each bucket also carries the cost
        of the top 3 tenants of the period.
        """
        if granularity not in ("day", "week", "month"):
            granularity = "day"
        end_date = end_date or utc_now()
        start_date = start_date or end_date - timedelta(days=30)

        stmt = select(
            LLMUsageLog.created_at,
            LLMUsageLog.tenant_id,
            LLMUsageLog.estimated_cost,
            LLMUsageLog.total_tokens,
        ).where(LLMUsageLog.status == "success")
        if tenant_id:
            stmt = stmt.where(LLMUsageLog.tenant_id == tenant_id)
        stmt = _period_filter(stmt, start_date, end_date)
        rows = (await self.db.execute(stmt)).all()

        top_ids: List[str] = []
        if include_top_tenants and not tenant_id:
            top = await self.get_top_tenant_spenders(3, start_date, end_date)
            top_ids = [t["tenant_id"] for t in top["top_tenants"]]

        buckets: Dict[str, Dict[str, Any]] = {}
        for created_at, row_tenant, cost, tokens in rows:
            key = _bucket(created_at, granularity)
            bucket = buckets.setdefault(
                key,
                {
                    "date": key,
                    "total_cost": 0.0,
                    "total_tokens": 0,
                    "total_calls": 0,
                    "tenant_breakdown": defaultdict(float),
                },
            )
            bucket["total_cost"] += float(cost or 0)
            bucket["total_tokens"] += int(tokens or 0)
            bucket["total_calls"] += 1
            if row_tenant in top_ids:
                bucket["tenant_breakdown"][row_tenant] += float(cost or 0)

        trends = []
        for key in sorted(buckets):
            bucket = buckets[key]
            bucket["total_cost"] = round(bucket["total_cost"], 6)
            bucket["tenant_breakdown"] = {
                k: round(v, 6) for k, v in bucket["tenant_breakdown"].items()
            }
            trends.append(bucket)

        return {
            "trends": trends,
            "granularity": granularity,
            "period": {"start": start_date, "end": end_date},
        }

    async def get_global_kpis(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals for the period, with percentage change against the previous one."""
        end_date = end_date or utc_now()
        start_date = start_date or end_date - timedelta(days=30)
        period = end_date - start_date

        cost, tokens, calls, tenants = await self._totals(start_date, end_date)
        prev_cost, prev_tokens, prev_calls, prev_tenants = await self._totals(
            start_date - period, start_date
        )

        return {
            "total_cost": cost,
            "total_tokens": tokens,
            "total_calls": calls,
            "active_tenants": tenants,
            "trends": {
                "cost": _pct_change(cost, prev_cost),
                "tokens": _pct_change(tokens, prev_tokens),
                "calls": _pct_change(calls, prev_calls),
                "tenants": tenants - prev_tenants,
            },
            "period": {"start": start_date, "end": end_date},
        }


_audit_service: Optional[LLMAuditService] = None


def get_llm_audit_service() -> LLMAuditService:
    global _audit_service
    if _audit_service is None:
        _audit_service = LLMAuditService()
    return _audit_service
