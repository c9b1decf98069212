"""Blob metadata for an uploaded CV."""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from cv_pipeline.db.database import Base, utc_now
from cv_pipeline.db.types import GUID


class CVFile(Base):
    """
    Where the bytes of a CV live on the blob store.

    Exactly one row per extraction. The file itself is stored flat in the
    storage directory as ``cv_<extraction_id>_<YYYY-MM-DD><ext>``.
    """

    __tablename__ = "cv_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    extraction_id = Column(
        GUID,
        ForeignKey("cv_extractions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    tenant_id = Column(String(64), nullable=False, index=True)

    file_path = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), default="application/pdf")
    original_filename = Column(String(255), nullable=True)

    uploaded_at = Column(DateTime, default=utc_now, index=True)

    extraction = relationship("CVExtraction", back_populates="cv_file")

    def __repr__(self):
        return f"<CVFile {self.extraction_id}: {self.file_path}>"

    def to_dict(self):
        return {
            "extraction_id": str(self.extraction_id),
            "tenant_id": self.tenant_id,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "original_filename": self.original_filename,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }
