"""cv pipeline schema

Revision ID: 001_cv_pipeline_schema
Revises:
Create Date: 2026-10-19

Employee profile tables, dictionaries, the extraction pipeline records and
the LLM usage log.

"""
import sqlalchemy as sa
from alembic import op

from cv_pipeline.db.types import GUID, JSONB, StringArray

# revision identifiers, used by Alembic.
revision = "001_cv_pipeline_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=True),
    ]


def _employee_fk():
    return sa.Column(
        "employee_id",
        sa.Integer,
        sa.ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )


def _provenance_fk():
    return sa.Column(
        "cv_extraction_id",
        GUID,
        sa.ForeignKey("cv_extractions.id", ondelete="SET NULL"),
        nullable=True,
    )


def _tenant():
    return sa.Column("tenant_id", sa.String(64), nullable=False)


def _profile_indexes(table: str):
    op.create_index(f"ix_{table}_employee_id", table, ["employee_id"])
    op.create_index(f"ix_{table}_tenant_id", table, ["tenant_id"])
    op.create_index(f"ix_{table}_cv_extraction_id", table, ["cv_extraction_id"])


def upgrade():
    # Dictionaries
    op.create_table(
        "companies",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("normalized_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_companies_name", "companies", ["name"])
    op.create_index("ix_companies_normalized_name", "companies", ["normalized_name"])
    op.create_index(
        "uq_companies_name_lower", "companies", [sa.text("lower(name)")], unique=True
    )

    op.create_table(
        "languages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("iso_code", sa.String(10), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_languages_name", "languages", ["name"])
    op.create_index(
        "uq_languages_name_lower", "languages", [sa.text("lower(name)")], unique=True
    )

    op.create_table(
        "language_proficiency_levels",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("level", sa.String(50), nullable=False),
        sa.Column("cefr_code", sa.String(5), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
    )

    op.create_table(
        "skills",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("synonyms", StringArray, nullable=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("is_custom", sa.Boolean, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_skills_name", "skills", ["name"])
    op.create_index("ix_skills_tenant_id", "skills", ["tenant_id"])

    op.create_table(
        "certifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("issuing_organization", sa.String(255), nullable=True),
        sa.Column("synonyms", StringArray, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_table(
        "sub_roles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_index("ix_sub_roles_role_id", "sub_roles", ["role_id"])

    # Employees
    op.create_table(
        "employees",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _tenant(),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_employees_tenant_id", "employees", ["tenant_id"])

    # Pipeline records
    op.create_table(
        "cv_extractions",
        sa.Column("id", GUID, primary_key=True),
        _tenant(),
        _employee_fk(),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("file_type", sa.String(100), nullable=True),
        sa.Column("file_size_bytes", sa.BigInteger, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("extraction_result", JSONB, nullable=True),
        sa.Column("extracted_text", sa.Text, nullable=True),
        sa.Column("import_stats", JSONB, nullable=True),
        sa.Column("llm_tokens_used", sa.Integer, nullable=True),
        sa.Column("llm_cost", sa.Numeric(12, 6), nullable=True),
        sa.Column("llm_model_used", sa.String(100), nullable=True),
        sa.Column("processing_time_seconds", sa.Float, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_phase", sa.String(50), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_cv_extractions_tenant_id", "cv_extractions", ["tenant_id"])
    op.create_index("ix_cv_extractions_employee_id", "cv_extractions", ["employee_id"])
    op.create_index("ix_cv_extractions_status", "cv_extractions", ["status"])
    op.create_index(
        "idx_cv_extractions_status_created", "cv_extractions", ["status", "created_at"]
    )
    op.create_index(
        "idx_cv_extractions_status_updated", "cv_extractions", ["status", "updated_at"]
    )

    op.create_table(
        "cv_files",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "extraction_id",
            GUID,
            sa.ForeignKey("cv_extractions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _tenant(),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("file_size", sa.BigInteger, nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("original_filename", sa.String(255), nullable=True),
        sa.Column("uploaded_at", sa.DateTime, nullable=True),
    )
    op.create_index(
        "ix_cv_files_extraction_id", "cv_files", ["extraction_id"], unique=True
    )
    op.create_index("ix_cv_files_tenant_id", "cv_files", ["tenant_id"])
    op.create_index("ix_cv_files_uploaded_at", "cv_files", ["uploaded_at"])

    # Employee profile
    op.create_table(
        "employee_additional_info",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "employee_id",
            sa.Integer,
            sa.ForeignKey("employees.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        _tenant(),
        sa.Column("personal_email", sa.String(255), nullable=True),
        sa.Column("personal_phone", sa.String(50), nullable=True),
        sa.Column("date_of_birth", sa.Date, nullable=True),
        sa.Column("place_of_birth", sa.String(255), nullable=True),
        sa.Column("nationality", sa.String(100), nullable=True),
        sa.Column("marital_status", sa.String(50), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("linkedin_url", sa.String(500), nullable=True),
        sa.Column("github_url", sa.String(500), nullable=True),
        sa.Column("portfolio_url", sa.String(500), nullable=True),
        sa.Column("hobbies_interests", StringArray, nullable=True),
        sa.Column("volunteer_experience", sa.Text, nullable=True),
        _provenance_fk(),
        *_timestamps(),
    )
    op.create_index(
        "ix_employee_additional_info_tenant_id", "employee_additional_info", ["tenant_id"]
    )
    op.create_index(
        "ix_employee_additional_info_cv_extraction_id",
        "employee_additional_info",
        ["cv_extraction_id"],
    )

    op.create_table(
        "employee_education",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column("degree_name", sa.String(255), nullable=False),
        sa.Column("institution_name", sa.String(255), nullable=False),
        sa.Column("field_of_study", sa.String(255), nullable=True),
        sa.Column("start_date", sa.Date, nullable=True),
        sa.Column("end_date", sa.Date, nullable=True),
        sa.Column("is_current", sa.Boolean, nullable=True),
        sa.Column("grade", sa.String(50), nullable=True),
        _provenance_fk(),
        *_timestamps(),
    )
    _profile_indexes("employee_education")

    op.create_table(
        "employee_work_experiences",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column(
            "company_id",
            sa.Integer,
            sa.ForeignKey("companies.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("company_name", sa.String(255), nullable=False),
        sa.Column("company_location", sa.String(255), nullable=True),
        sa.Column("job_title", sa.String(255), nullable=False),
        sa.Column("start_date", sa.Date, nullable=True),
        sa.Column("end_date", sa.Date, nullable=True),
        sa.Column("is_current", sa.Boolean, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("responsibilities", JSONB, nullable=True),
        sa.Column("achievements", JSONB, nullable=True),
        _provenance_fk(),
        *_timestamps(),
    )
    _profile_indexes("employee_work_experiences")

    op.create_table(
        "employee_languages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column("language_id", sa.Integer, sa.ForeignKey("languages.id"), nullable=False),
        sa.Column(
            "proficiency_level_id",
            sa.Integer,
            sa.ForeignKey("language_proficiency_levels.id"),
            nullable=True,
        ),
        sa.Column("cefr_level", sa.String(5), nullable=True),
        sa.Column("is_native", sa.Boolean, nullable=True),
        _provenance_fk(),
        *_timestamps(),
        sa.UniqueConstraint("employee_id", "language_id", name="uq_employee_language"),
    )
    _profile_indexes("employee_languages")

    op.create_table(
        "employee_certifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column(
            "certification_id",
            sa.Integer,
            sa.ForeignKey("certifications.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("certification_name", sa.String(255), nullable=False),
        sa.Column("issuing_organization", sa.String(255), nullable=True),
        sa.Column("issue_date", sa.Date, nullable=True),
        sa.Column("expiry_date", sa.Date, nullable=True),
        sa.Column("credential_id", sa.String(255), nullable=True),
        sa.Column("credential_url", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=True),
        sa.Column("source", sa.String(50), nullable=True),
        _provenance_fk(),
        *_timestamps(),
    )
    _profile_indexes("employee_certifications")

    op.create_table(
        "employee_skills",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column("skill_id", sa.Integer, sa.ForeignKey("skills.id"), nullable=False),
        sa.Column("proficiency_level", sa.Float, nullable=True),
        sa.Column("source", sa.String(50), nullable=True),
        _provenance_fk(),
        *_timestamps(),
        sa.UniqueConstraint("employee_id", "skill_id", name="uq_employee_skill"),
    )
    _profile_indexes("employee_skills")

    op.create_table(
        "employee_roles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("sub_role_id", sa.Integer, sa.ForeignKey("sub_roles.id"), nullable=False),
        sa.Column("years_of_experience", sa.Integer, nullable=True),
        sa.Column("seniority", sa.String(20), nullable=True),
        sa.Column("is_current", sa.Boolean, nullable=True),
        _provenance_fk(),
        *_timestamps(),
    )
    _profile_indexes("employee_roles")

    op.create_table(
        "employee_domain_knowledge",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _employee_fk(),
        _tenant(),
        sa.Column("domain_type", sa.String(50), nullable=False),
        sa.Column("domain_value", sa.String(255), nullable=False),
        sa.Column("source", sa.String(50), nullable=True),
        _provenance_fk(),
        *_timestamps(),
        sa.UniqueConstraint(
            "employee_id", "domain_type", "domain_value", name="uq_employee_domain"
        ),
    )
    _profile_indexes("employee_domain_knowledge")

    # LLM usage log (append-only)
    op.create_table(
        "llm_usage_logs",
        sa.Column("id", GUID, primary_key=True),
        _tenant(),
        sa.Column("operation_type", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("estimated_cost", sa.Numeric(12, 6), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="success"),
        sa.Column("response_time_ms", sa.Integer, nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("request_id", sa.String(64), nullable=False, unique=True),
        sa.Column("parent_operation_id", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        sa.Column("request_params", JSONB, nullable=True),
        sa.Column("response_summary", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.CheckConstraint(
            "status IN ('success', 'failed', 'timeout', 'rate_limited')",
            name="llm_usage_logs_status_valid",
        ),
    )
    op.create_index("ix_llm_usage_logs_tenant_id", "llm_usage_logs", ["tenant_id"])
    op.create_index(
        "ix_llm_usage_logs_operation_type", "llm_usage_logs", ["operation_type"]
    )
    op.create_index("ix_llm_usage_logs_status", "llm_usage_logs", ["status"])
    op.create_index("ix_llm_usage_logs_created_at", "llm_usage_logs", ["created_at"])
    op.create_index(
        "idx_llm_usage_entity", "llm_usage_logs", ["entity_type", "entity_id"]
    )
    op.create_index(
        "idx_llm_usage_tenant_created", "llm_usage_logs", ["tenant_id", "created_at"]
    )


def downgrade():
    for table in (
        "llm_usage_logs",
        "employee_domain_knowledge",
        "employee_roles",
        "employee_skills",
        "employee_certifications",
        "employee_languages",
        "employee_work_experiences",
        "employee_education",
        "employee_additional_info",
        "cv_files",
        "cv_extractions",
        "employees",
        "sub_roles",
        "roles",
        "certifications",
        "skills",
        "language_proficiency_levels",
        "languages",
        "companies",
    ):
        op.drop_table(table)
