"""Pydantic schemas for the CV pipeline."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Extraction service payload
class ExtractionServiceResponse(BaseModel):
    """
    Body returned by the extraction service's synchronous endpoint.

    Unknown keys are kept so new sections reach extraction_result without a
    code change here.
    """

    model_config = ConfigDict(extra="allow")

    personal_info: Dict[str, Any] = Field(default_factory=dict)
    education: List[Dict[str, Any]] = Field(default_factory=list)
    work_experience: List[Dict[str, Any]] = Field(default_factory=list)
    skills: Union[Dict[str, Any], List[Any]] = Field(default_factory=dict)
    languages: List[Dict[str, Any]] = Field(default_factory=list)
    certifications: List[Dict[str, Any]] = Field(default_factory=list)
    domain_knowledge: Dict[str, Any] = Field(default_factory=dict)
    role: Dict[str, Any] = Field(default_factory=dict)
    roles: List[Dict[str, Any]] = Field(default_factory=list)

    llm_tokens_used: Optional[int] = 0
    extraction_cost: Optional[float] = None
    llm_model_used: Optional[str] = None
    extracted_text: Optional[str] = None

    def to_extraction_result(self) -> Dict[str, Any]:
        """Structured part of the payload, as stored in cv_extractions.extraction_result."""
        return {
            "personal_info": self.personal_info or {},
            "education": self.education or [],
            "work_experience": self.work_experience or [],
            "skills": self.skills or {},
            "languages": self.languages or [],
            "certifications": self.certifications or [],
            "domain_knowledge": self.domain_knowledge or {},
            "role": self.role or {},
            "roles": self.roles or [],
        }


class ExtractionAck(BaseModel):
    """Acknowledgement returned by the asynchronous endpoint."""

    model_config = ConfigDict(extra="allow")

    success: bool = True
    message: Optional[str] = None
    extraction_id: Optional[str] = None


# Request schemas
class ExtractAndSaveRequest(BaseModel):
    employee_id: int = Field(..., gt=0, description="Employee whose pending CV should be queued")


# Response schemas
class CVUploadResponse(BaseModel):
    extraction_id: str
    employee_id: int
    status: str
    file_size: int
    original_filename: Optional[str] = None


class ExtractAndSaveResponse(BaseModel):
    success: bool = True
    jobId: str
    message: str


class ExtractionStatusResponse(BaseModel):
    """Pipeline state as seen by a polling client."""

    extraction_id: str
    status: str
    employee_id: int
    progress: int
    message: str
    elapsed_seconds: float
    created_at: datetime
    updated_at: datetime
    retry_count: int = 0
    import_stats: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_phase: Optional[str] = None


class StorageHealthResponse(BaseModel):
    status: str
    writable: bool
    path: str
    environment: str
    storage_type: str
    file_count: int = 0
    total_size_bytes: int = 0
    error: Optional[str] = None
