"""
Employee profile models populated by the CV importer.

Every child row carries the tenant of the employee and, when it came from a
CV, the id of the extraction that produced it (``cv_extraction_id``). The
provenance column is nulled, not cascaded, when an extraction is deleted.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from cv_pipeline.db.database import Base, utc_now
from cv_pipeline.db.types import GUID, JSONB, StringArray


def _provenance_column():
    return Column(
        GUID,
        ForeignKey("cv_extractions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )


def _employee_column():
    return Column(
        Integer,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


class Employee(Base):
    """HR employee. Owned by the wider platform; the pipeline only patches it."""

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    cv_extractions = relationship(
        "CVExtraction", back_populates="employee", passive_deletes=True
    )

    def __repr__(self):
        return f"<Employee {self.id} ({self.tenant_id})>"


class EmployeeAdditionalInfo(Base):
    """Extended personal profile, one row per employee."""

    __tablename__ = "employee_additional_info"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(
        Integer,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    tenant_id = Column(String(64), nullable=False, index=True)

    personal_email = Column(String(255), nullable=True)
    personal_phone = Column(String(50), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    place_of_birth = Column(String(255), nullable=True)
    nationality = Column(String(100), nullable=True)
    marital_status = Column(String(50), nullable=True)
    location = Column(String(255), nullable=True)
    linkedin_url = Column(String(500), nullable=True)
    github_url = Column(String(500), nullable=True)
    portfolio_url = Column(String(500), nullable=True)
    hobbies_interests = Column(StringArray, nullable=True)
    volunteer_experience = Column(Text, nullable=True)

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class EmployeeEducation(Base):
    __tablename__ = "employee_education"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    degree_name = Column(String(255), nullable=False)
    institution_name = Column(String(255), nullable=False)
    field_of_study = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    is_current = Column(Boolean, default=False)
    grade = Column(String(50), nullable=True)

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class EmployeeWorkExperience(Base):
    __tablename__ = "employee_work_experiences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    company_id = Column(
        Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True
    )
    company_name = Column(String(255), nullable=False)
    company_location = Column(String(255), nullable=True)
    job_title = Column(String(255), nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    is_current = Column(Boolean, default=False)
    description = Column(Text, nullable=True)
    responsibilities = Column(JSONB, nullable=True)
    achievements = Column(JSONB, nullable=True)

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    company = relationship("Company")


class EmployeeLanguage(Base):
    __tablename__ = "employee_languages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    language_id = Column(Integer, ForeignKey("languages.id"), nullable=False)
    proficiency_level_id = Column(
        Integer, ForeignKey("language_proficiency_levels.id"), nullable=True
    )
    cefr_level = Column(String(5), nullable=True)
    is_native = Column(Boolean, default=False)

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("employee_id", "language_id", name="uq_employee_language"),
    )


class EmployeeCertification(Base):
    """Certification held by an employee; the free-text name is always kept."""

    __tablename__ = "employee_certifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    certification_id = Column(
        Integer, ForeignKey("certifications.id", ondelete="SET NULL"), nullable=True
    )
    certification_name = Column(String(255), nullable=False)
    issuing_organization = Column(String(255), nullable=True)
    issue_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True)
    credential_id = Column(String(255), nullable=True)
    credential_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True)
    source = Column(String(50), default="cv_extracted")

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class EmployeeSkill(Base):
    __tablename__ = "employee_skills"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    skill_id = Column(Integer, ForeignKey("skills.id"), nullable=False)
    # Extraction confidence in [0, 1]
    proficiency_level = Column(Float, nullable=True)
    source = Column(String(50), default="cv_extracted")

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("employee_id", "skill_id", name="uq_employee_skill"),
    )


class EmployeeRole(Base):
    __tablename__ = "employee_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    sub_role_id = Column(Integer, ForeignKey("sub_roles.id"), nullable=False)
    years_of_experience = Column(Integer, default=0)
    seniority = Column(String(20), nullable=True)
    is_current = Column(Boolean, default=False)

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class EmployeeDomainKnowledge(Base):
    __tablename__ = "employee_domain_knowledge"

    DOMAIN_TYPES = ("industry", "standard", "process", "sector")

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = _employee_column()
    tenant_id = Column(String(64), nullable=False, index=True)

    domain_type = Column(String(50), nullable=False)
    domain_value = Column(String(255), nullable=False)
    source = Column(String(50), default="cv_extracted")

    cv_extraction_id = _provenance_column()
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "employee_id", "domain_type", "domain_value", name="uq_employee_domain"
        ),
    )
