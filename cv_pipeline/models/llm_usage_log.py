"""
LLM usage log model

Append-only record of every external LLM call made by the pipeline or
reported back by the extraction service. Source of truth for LLM cost
accounting.
"""

import uuid
from typing import Any, Dict

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from cv_pipeline.db.database import Base, utc_now
from cv_pipeline.db.types import GUID, JSONB


class LLMUsageLog(Base):
    """
    Usage entry for a single LLM call.

    This model captures:
    - Token usage (prompt, completion, total)
    - Estimated cost in USD with 6 decimals
    - Provider and model
    - Outcome and latency
    - Optional back-reference to the entity the call was made for

    Rows are never updated or deleted.
    """

    __tablename__ = "llm_usage_logs"

    STATUSES = ("success", "failed", "timeout", "rate_limited")

    id = Column(GUID, primary_key=True, default=uuid.uuid4)

    tenant_id = Column(String(64), nullable=False, index=True)
    operation_type = Column(String(100), nullable=False, index=True)

    # Provider information
    provider = Column(String(50), nullable=False)
    model = Column(String(100), nullable=False)

    # Token counts
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)

    estimated_cost = Column(Numeric(12, 6, asdecimal=False), nullable=False, default=0)

    status = Column(String(20), nullable=False, default="success", index=True)
    response_time_ms = Column(Integer, nullable=True)

    # Back-reference
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(String(64), nullable=True)
    user_id = Column(String(64), nullable=True)

    # Correlation
    request_id = Column(
        String(64), nullable=False, unique=True, default=lambda: str(uuid.uuid4())
    )
    parent_operation_id = Column(String(64), nullable=True)

    error_message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSONB, nullable=True)
    request_params = Column(JSONB, nullable=True)
    response_summary = Column(JSONB, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("idx_llm_usage_entity", "entity_type", "entity_id"),
        Index("idx_llm_usage_tenant_created", "tenant_id", "created_at"),
        CheckConstraint(
            "status IN ('success', 'failed', 'timeout', 'rate_limited')",
            name="llm_usage_logs_status_valid",
        ),
    )

    def __repr__(self):
        return (
            f"<LLMUsageLog(id={self.id}, operation={self.operation_type}, "
            f"model={self.model}, cost={self.estimated_cost})>"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses"""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "operation_type": self.operation_type,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "status": self.status,
            "response_time_ms": self.response_time_ms,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "request_id": self.request_id,
            "parent_operation_id": self.parent_operation_id,
            "error_message": self.error_message,
            "metadata": self.metadata_,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
