"""Pydantic schemas for the internal LLM usage routes."""

from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from cv_pipeline.models.llm_usage_log import LLMUsageLog


class TokenUsage(BaseModel):
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)
    total_tokens: Optional[int] = Field(None, ge=0)


class LLMUsageLogRequest(BaseModel):
    """
    Body of POST /internal/llm-usage-log.

    Field names follow the camelCase wire format of the calling services.
    Required fields and the status value are checked by the route so a bad
    body is reported as a plain 400 instead of a validation error.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tenantId: Optional[str] = None
    operationType: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
    status: str = "success"
    responseTime: Optional[int] = Field(None, ge=0)
    requestParams: Optional[Dict[str, Any]] = None
    responseSummary: Optional[Dict[str, Any]] = None
    entityType: Optional[str] = None
    entityId: Optional[Union[str, int]] = None
    userId: Optional[Union[str, int]] = None
    requestId: Optional[str] = None
    parentOperationId: Optional[str] = None
    errorMessage: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    preCalculatedCost: Optional[float] = Field(None, ge=0)

    REQUIRED: ClassVar[Tuple[str, ...]] = ("tenantId", "operationType", "provider", "model")

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    def status_is_valid(self) -> bool:
        return self.status in LLMUsageLog.STATUSES


class LLMUsageLogResponse(BaseModel):
    success: bool = True
    log_id: str
