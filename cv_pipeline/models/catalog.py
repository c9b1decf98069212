"""
Dictionary tables referenced by imported employee rows.

The importer may create companies, languages and tenant-scoped custom
skills. Global skills, certifications, roles and sub-roles are maintained
elsewhere and only ever linked.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import relationship

from cv_pipeline.db.database import Base, utc_now
from cv_pipeline.db.types import StringArray


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    normalized_name = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("uq_companies_name_lower", func.lower(name), unique=True),
    )

    def __repr__(self):
        return f"<Company {self.id}: {self.name}>"


class Language(Base):
    __tablename__ = "languages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, index=True)
    iso_code = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("uq_languages_name_lower", func.lower(name), unique=True),
    )

    def __repr__(self):
        return f"<Language {self.id}: {self.name}>"


class LanguageProficiencyLevel(Base):
    __tablename__ = "language_proficiency_levels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(String(50), nullable=False)
    cefr_code = Column(String(5), nullable=True)
    description = Column(String(255), nullable=True)


class Skill(Base):
    """Global skill when tenant_id is null, tenant custom skill otherwise."""

    __tablename__ = "skills"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    synonyms = Column(StringArray, nullable=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    is_custom = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        scope = self.tenant_id or "global"
        return f"<Skill {self.id}: {self.name} ({scope})>"


class Certification(Base):
    __tablename__ = "certifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    issuing_organization = Column(String(255), nullable=True)
    synonyms = Column(StringArray, nullable=True)
    created_at = Column(DateTime, default=utc_now)


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    sub_roles = relationship("SubRole", back_populates="role")


class SubRole(Base):
    __tablename__ = "sub_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    role = relationship("Role", back_populates="sub_roles")
