"""CV extraction pipeline record model."""

import uuid

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from cv_pipeline.db.database import Base, utc_now
from cv_pipeline.db.types import GUID, JSONB


class CVExtraction(Base):
    """
    One CV ingestion attempt, from upload to import.

    The table is the only coordination point between the upload API, the
    background worker and the external extraction service. Every status
    change goes through a compare-and-swap on ``status`` (see
    services/pipeline_state.py).

    Status flow:
        pending -> processing -> extracted -> importing -> completed
        any non-terminal state -> failed
        importing -> extracted (import retry, bounded by retry_count)

    Attributes:
        id: Extraction identifier returned to the uploader
        tenant_id: Tenant scope, inherited by every imported row
        employee_id: Employee the extracted data is attached to
        original_filename: Name of the uploaded file (provenance only)
        file_type: MIME type of the uploaded file
        status: Pipeline state
        extraction_result: Structured payload from the extraction service
        extracted_text: Raw document text
        import_stats: Created/updated counts written on completion
        llm_tokens_used: Tokens reported by the extraction service
        llm_cost: Cost in USD reported by the extraction service
        llm_model_used: Model reported by the extraction service
        processing_time_seconds: Extraction duration
        error_message: Error details if failed
        error_phase: Phase label of the failure
        retry_count: Failed import attempts so far
    """

    __tablename__ = "cv_extractions"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)

    # Ownership (immutable after creation)
    tenant_id = Column(String(64), nullable=False, index=True)
    employee_id = Column(
        Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # File provenance
    original_filename = Column(String(255), nullable=True)
    file_type = Column(String(100), nullable=True)
    file_size_bytes = Column(BigInteger, nullable=True)

    # Processing state
    status = Column(String(20), nullable=False, default="pending", index=True)
    extraction_result = Column(JSONB, nullable=True)
    extracted_text = Column(Text, nullable=True)
    import_stats = Column(JSONB, nullable=True)

    # Figures reported by the extraction service
    llm_tokens_used = Column(Integer, nullable=True)
    llm_cost = Column(Numeric(12, 6, asdecimal=False), nullable=True)
    llm_model_used = Column(String(100), nullable=True)
    processing_time_seconds = Column(Float, nullable=True)

    # Failure tracking
    error_message = Column(Text, nullable=True)
    error_phase = Column(String(50), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    employee = relationship("Employee", back_populates="cv_extractions")
    cv_file = relationship(
        "CVFile",
        back_populates="extraction",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_cv_extractions_status_created", "status", "created_at"),
        Index("idx_cv_extractions_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<CVExtraction {self.id}: {self.status}>"

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "employee_id": self.employee_id,
            "original_filename": self.original_filename,
            "file_type": self.file_type,
            "file_size_bytes": self.file_size_bytes,
            "status": self.status,
            "import_stats": self.import_stats,
            "llm_tokens_used": self.llm_tokens_used,
            "llm_cost": self.llm_cost,
            "llm_model_used": self.llm_model_used,
            "processing_time_seconds": self.processing_time_seconds,
            "error_message": self.error_message,
            "error_phase": self.error_phase,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
