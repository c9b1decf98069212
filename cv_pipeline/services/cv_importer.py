"""
CV Importer
Materializes an extraction_result payload into the employee profile tables.

One call handles one extraction and never commits: the caller opens the
transaction, runs ``import_extraction`` and commits or rolls back as a
whole, so a failed import leaves no partial rows behind.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.logging import get_logger
from cv_pipeline.db.database import utc_now
from cv_pipeline.models.catalog import (
    Certification,
    Company,
    Language,
    LanguageProficiencyLevel,
    Skill,
    SubRole,
)
from cv_pipeline.models.cv_extraction import CVExtraction
from cv_pipeline.models.employee import (
    Employee,
    EmployeeAdditionalInfo,
    EmployeeCertification,
    EmployeeDomainKnowledge,
    EmployeeEducation,
    EmployeeLanguage,
    EmployeeRole,
    EmployeeSkill,
    EmployeeWorkExperience,
)
from cv_pipeline.services.pipeline_state import ExtractionStatus, transition
from cv_pipeline.utils.exceptions import CVImportError

logger = get_logger(__name__)

SOURCE = "cv_extracted"

CATEGORIES = (
    "additional_info",
    "education",
    "work_experience",
    "languages",
    "certifications",
    "skills",
    "roles",
    "domain_knowledge",
)

# Canonical English names for language names the extraction service
# returns in Italian
LANGUAGE_NAME_MAP = {
    "italiano": "Italian",
    "inglese": "English",
    "spagnolo": "Spanish",
    "francese": "French",
    "tedesco": "German",
    "portoghese": "Portuguese",
    "cinese": "Chinese",
    "giapponese": "Japanese",
    "russo": "Russian",
    "arabo": "Arabic",
}

PROFICIENCY_TO_CEFR = {
    "Native": "C2",
    "Fluent": "C1",
    "Professional": "B2",
    "Intermediate": "B1",
    "Basic": "A2",
}

SENIORITY_ORDER = {"Senior": 3, "Mid": 2, "Junior": 1}

DOMAIN_CATEGORIES = (
    ("industry_domains", "industry"),
    ("standards_protocols", "standard"),
    ("business_processes", "process"),
    ("client_sectors", "sector"),
)

ADDITIONAL_INFO_FIELDS = (
    "place_of_birth",
    "nationality",
    "marital_status",
    "location",
    "linkedin_url",
    "github_url",
    "portfolio_url",
    "volunteer_experience",
)

_LEGAL_SUFFIXES = (
    "s.r.l.", "s.r.l", "srl", "s.p.a.", "s.p.a", "spa",
    "ltd.", "ltd", "inc.", "inc", "llc.", "llc",
    "gmbh", "s.a.", "sa", "ag", "nv", "bv",
    "corporation", "corp.", "corp", "limited", "company", "co.", "co",
)
_SUFFIX_PATTERN = re.compile(
    r"(?<!\w)(" + "|".join(re.escape(s) for s in _LEGAL_SUFFIXES) + r")(?!\w)"
)
_HOBBY_SEPARATORS = re.compile(r"[,;\n]+")

_DATE_FORMATS = ("%Y-%m-%d", "%Y-%m", "%Y", "%m/%Y", "%d/%m/%Y")


def normalize_company_name(name: Optional[str]) -> str:
    """
    Normalized company name used for duplicate detection.

    "Taal Srl" -> "taal", "RINGMASTER - Lottomatica" -> "ringmaster lottomatica"
    """
    if not name:
        return ""
    normalized = _SUFFIX_PATTERN.sub(" ", name.lower().strip())
    normalized = re.sub(r"[&!.,\-()/]", " ", normalized)
    normalized = re.sub(r"\b(e|and|et)\b", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def parse_date(value: Any) -> Optional[date]:
    """Parse the loose date strings produced by the extraction service."""
    if value is None or isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.lower() in ("present", "current", "now", "presente", "oggi"):
        return None
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.debug("Unparseable date from extraction", value=text)
    return None


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _is_empty(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


class CVImporter:
    """Writes one extraction result into the HR schema"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.created = {category: 0 for category in CATEGORIES}
        self.updated = {category: 0 for category in CATEGORIES}
        self.dictionary_created = {"companies": 0, "languages": 0, "custom_skills": 0}
        self.personal_info_updated = False

    async def import_extraction(self, extraction_id) -> Dict[str, Any]:
        """
        Import the extraction result and move the record importing -> completed.

        The record must already be in ``importing``. Every write, including the
        final status change, goes through ``self.db`` without committing.

        Returns:
            The import_stats stored on the record

        Raises:
            CVImportError: the record, its payload or its employee is missing,
                or another writer moved the record out of ``importing``
        """
        self._reset_stats()

        extraction = await self.db.get(CVExtraction, extraction_id)
        if extraction is None:
            raise CVImportError(f"CV extraction {extraction_id} not found")
        if not extraction.extraction_result:
            raise CVImportError(f"CV extraction {extraction_id} has no extraction_result")

        employee = await self.db.get(Employee, extraction.employee_id)
        if employee is None:
            raise CVImportError(f"Employee {extraction.employee_id} not found")

        data = extraction.extraction_result
        # The employee row is the source of truth for the tenant
        tenant_id = employee.tenant_id
        ctx = _ImportContext(employee, tenant_id, extraction.id)

        await self._save_personal_info(ctx, data.get("personal_info") or {})
        await self._save_education(ctx, data.get("education") or [])
        work_rows = data.get("work_experience") or []
        await self._save_work_experience(ctx, work_rows)
        await self._save_languages(ctx, data.get("languages") or [])
        await self._save_certifications(ctx, data.get("certifications") or [])
        await self._save_skills(ctx, data.get("skills"))
        years = self.years_of_experience(work_rows)
        await self._save_roles(ctx, data, years)
        await self._save_domain_knowledge(ctx, data.get("domain_knowledge") or {})

        stats = self.build_stats(years)
        swapped = await transition(
            self.db,
            extraction.id,
            ExtractionStatus.IMPORTING,
            ExtractionStatus.COMPLETED,
            {"import_stats": stats, "error_message": None, "error_phase": None},
        )
        if not swapped:
            raise CVImportError(
                f"CV extraction {extraction_id} left importing during the import"
            )

        logger.info(
            "CV data imported",
            extraction_id=str(extraction.id),
            employee_id=employee.id,
            created=self.created,
            updated=self.updated,
        )
        return stats

    def build_stats(self, years_of_experience: int) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"personal_info_updated": self.personal_info_updated}
        for category in CATEGORIES:
            stats[f"{category}_saved"] = self.created[category] + self.updated[category]
        stats["created"] = dict(self.created)
        stats["updated"] = dict(self.updated)
        stats["dictionary_created"] = dict(self.dictionary_created)
        stats["years_of_experience"] = years_of_experience
        stats["import_timestamp"] = utc_now().isoformat()
        return stats

    @staticmethod
    def years_of_experience(work_rows: Iterable[Dict[str, Any]], today: Optional[date] = None) -> int:
        """Sum of month spans over the work rows, floored to whole years."""
        today = today or utc_now().date()
        total_months = 0
        for work in work_rows:
            start = parse_date(work.get("start_date"))
            if start is None:
                continue
            end = parse_date(work.get("end_date")) or today
            total_months += max(months_between(start, end), 0)
        return total_months // 12

    # Personal info

    async def _save_personal_info(self, ctx: "_ImportContext", info: Dict[str, Any]) -> None:
        if not info:
            return
        employee = ctx.employee
        changed = []

        full_name = _clean(info.get("full_name"))
        if full_name:
            first, _, last = full_name.partition(" ")
            last = last.strip() or None
            if _is_empty(employee.first_name):
                employee.first_name = first
                changed.append("first_name")
            if last and _is_empty(employee.last_name):
                employee.last_name = last
                changed.append("last_name")

        for field in ("email", "phone"):
            value = _clean(info.get(field))
            if value and _is_empty(getattr(employee, field)):
                setattr(employee, field, value)
                changed.append(field)

        if changed:
            employee.updated_at = utc_now()
            self.personal_info_updated = True
            logger.info(
                "Personal info updated", employee_id=employee.id, fields=changed
            )

        await self._save_additional_info(ctx, info)

    async def _save_additional_info(self, ctx: "_ImportContext", info: Dict[str, Any]) -> None:
        values: Dict[str, Any] = {}
        personal_email = _clean(info.get("personal_email")) or _clean(info.get("email"))
        personal_phone = _clean(info.get("personal_phone")) or _clean(info.get("phone"))
        if personal_email:
            values["personal_email"] = personal_email
        if personal_phone:
            values["personal_phone"] = personal_phone

        date_of_birth = parse_date(info.get("date_of_birth"))
        if date_of_birth:
            values["date_of_birth"] = date_of_birth

        for field in ADDITIONAL_INFO_FIELDS:
            value = _clean(info.get(field))
            if value:
                values[field] = value

        hobbies = info.get("hobbies_interests")
        if isinstance(hobbies, str):
            hobbies = [h.strip() for h in _HOBBY_SEPARATORS.split(hobbies) if h.strip()]
        if hobbies:
            values["hobbies_interests"] = list(hobbies)

        if not values:
            return

        result = await self.db.execute(
            select(EmployeeAdditionalInfo).where(
                EmployeeAdditionalInfo.employee_id == ctx.employee.id
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = EmployeeAdditionalInfo(
                employee_id=ctx.employee.id, tenant_id=ctx.tenant_id
            )
            self.db.add(row)
            self.created["additional_info"] += 1
        else:
            self.updated["additional_info"] += 1
        for field, value in values.items():
            setattr(row, field, value)
        row.cv_extraction_id = ctx.extraction_id
        row.updated_at = utc_now()

    # Education and work experience

    async def _save_education(self, ctx: "_ImportContext", rows: List[Dict[str, Any]]) -> None:
        for edu in rows:
            degree = _clean(edu.get("degree_name")) or "Unknown"
            institution = _clean(edu.get("institution_name")) or "Unknown"
            start_date = parse_date(edu.get("start_date"))

            result = await self.db.execute(
                select(EmployeeEducation).where(
                    EmployeeEducation.employee_id == ctx.employee.id,
                    EmployeeEducation.institution_name == institution,
                    EmployeeEducation.degree_name == degree,
                    EmployeeEducation.start_date.is_(None)
                    if start_date is None
                    else EmployeeEducation.start_date == start_date,
                )
            )
            existing = result.scalars().first()

            if existing:
                existing.field_of_study = _clean(edu.get("field_of_study")) or existing.field_of_study
                existing.end_date = parse_date(edu.get("end_date")) or existing.end_date
                if edu.get("is_current") is not None:
                    existing.is_current = bool(edu["is_current"])
                existing.grade = _clean(edu.get("grade")) or existing.grade
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["education"] += 1
            else:
                self.db.add(
                    EmployeeEducation(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        degree_name=degree,
                        institution_name=institution,
                        field_of_study=_clean(edu.get("field_of_study")),
                        start_date=start_date,
                        end_date=parse_date(edu.get("end_date")),
                        is_current=bool(edu.get("is_current", False)),
                        grade=_clean(edu.get("grade")),
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["education"] += 1

    async def resolve_company(self, name: str) -> Company:
        """Case-insensitive exact match on companies.name, created when absent."""
        result = await self.db.execute(
            select(Company).where(func.lower(Company.name) == name.lower()).limit(1)
        )
        company = result.scalar_one_or_none()
        if company is None:
            company = Company(name=name, normalized_name=normalize_company_name(name))
            self.db.add(company)
            await self.db.flush()
            self.dictionary_created["companies"] += 1
            logger.info("Company created", company=name, company_id=company.id)
        return company

    async def _save_work_experience(self, ctx: "_ImportContext", rows: List[Dict[str, Any]]) -> None:
        for work in rows:
            company_name = _clean(work.get("company_name")) or "Unknown"
            job_title = _clean(work.get("job_title")) or "Unknown"
            start_date = parse_date(work.get("start_date"))
            end_date = parse_date(work.get("end_date"))

            company_id = None
            if company_name != "Unknown":
                company_id = (await self.resolve_company(company_name)).id

            result = await self.db.execute(
                select(EmployeeWorkExperience).where(
                    EmployeeWorkExperience.employee_id == ctx.employee.id,
                    EmployeeWorkExperience.company_name == company_name,
                    EmployeeWorkExperience.job_title == job_title,
                    EmployeeWorkExperience.start_date.is_(None)
                    if start_date is None
                    else EmployeeWorkExperience.start_date == start_date,
                )
            )
            existing = result.scalars().first()

            if existing:
                existing.company_id = company_id or existing.company_id
                existing.company_location = (
                    _clean(work.get("company_location")) or existing.company_location
                )
                existing.end_date = end_date or existing.end_date
                if work.get("is_current") is not None:
                    existing.is_current = bool(work["is_current"])
                existing.description = _clean(work.get("description")) or existing.description
                if work.get("responsibilities"):
                    existing.responsibilities = work["responsibilities"]
                if work.get("achievements"):
                    existing.achievements = work["achievements"]
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["work_experience"] += 1
            else:
                self.db.add(
                    EmployeeWorkExperience(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        company_id=company_id,
                        company_name=company_name,
                        company_location=_clean(work.get("company_location")),
                        job_title=job_title,
                        start_date=start_date,
                        end_date=end_date,
                        is_current=bool(work.get("is_current", False)),
                        description=_clean(work.get("description")),
                        responsibilities=work.get("responsibilities") or [],
                        achievements=work.get("achievements") or [],
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["work_experience"] += 1

    # Languages

    @staticmethod
    def canonical_language_name(name: str) -> str:
        name = name.strip()
        return LANGUAGE_NAME_MAP.get(name.lower(), name)

    async def resolve_language(self, name: str) -> Language:
        result = await self.db.execute(
            select(Language).where(func.lower(Language.name) == name.lower()).limit(1)
        )
        language = result.scalar_one_or_none()
        if language is None:
            language = Language(name=name)
            self.db.add(language)
            await self.db.flush()
            self.dictionary_created["languages"] += 1
            logger.info("Language created", language=name, language_id=language.id)
        return language

    async def resolve_proficiency_level(
        self, proficiency: Optional[str], cefr: Optional[str]
    ) -> Optional[LanguageProficiencyLevel]:
        conditions = []
        if proficiency:
            conditions.append(LanguageProficiencyLevel.level == proficiency)
        if cefr:
            conditions.append(LanguageProficiencyLevel.cefr_code == cefr)
        if not conditions:
            return None
        result = await self.db.execute(
            select(LanguageProficiencyLevel).where(or_(*conditions)).limit(1)
        )
        return result.scalar_one_or_none()

    async def _save_languages(self, ctx: "_ImportContext", rows: List[Dict[str, Any]]) -> None:
        for lang in rows:
            raw_name = _clean(lang.get("language")) or _clean(lang.get("language_name"))
            if not raw_name:
                logger.debug("Skipping language without a name")
                continue

            language = await self.resolve_language(self.canonical_language_name(raw_name))
            proficiency = _clean(lang.get("proficiency"))
            cefr = _clean(lang.get("cef_level")) or _clean(lang.get("cefr_level"))
            if not cefr and proficiency:
                cefr = PROFICIENCY_TO_CEFR.get(proficiency)
            level = await self.resolve_proficiency_level(proficiency, cefr)
            is_native = proficiency == "Native"

            result = await self.db.execute(
                select(EmployeeLanguage).where(
                    EmployeeLanguage.employee_id == ctx.employee.id,
                    EmployeeLanguage.language_id == language.id,
                )
            )
            existing = result.scalar_one_or_none()

            if existing:
                existing.cefr_level = cefr or existing.cefr_level
                if level is not None:
                    existing.proficiency_level_id = level.id
                existing.is_native = is_native or bool(existing.is_native)
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["languages"] += 1
            else:
                self.db.add(
                    EmployeeLanguage(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        language_id=language.id,
                        proficiency_level_id=level.id if level is not None else None,
                        cefr_level=cefr,
                        is_native=is_native,
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["languages"] += 1

    # Certifications

    async def match_certification(self, name: str) -> Optional[Certification]:
        """
        Link a free-text certification to the global catalog.

        Tries a case-insensitive containment on the catalog name (either
        way round), then containment against each synonym. Never creates
        catalog rows.
        """
        needle = name.lower()
        result = await self.db.execute(
            select(Certification)
            .where(func.lower(Certification.name).contains(needle, autoescape=True))
            .order_by(func.length(Certification.name))
            .limit(1)
        )
        certification = result.scalar_one_or_none()
        if certification is not None:
            return certification

        result = await self.db.execute(select(Certification).order_by(Certification.id))
        candidates = result.scalars().all()
        for candidate in candidates:
            if candidate.name and candidate.name.lower() in needle:
                return candidate
        for candidate in candidates:
            for synonym in candidate.synonyms or []:
                synonym = synonym.lower()
                if synonym and (synonym in needle or needle in synonym):
                    return candidate
        return None

    async def _save_certifications(self, ctx: "_ImportContext", rows: List[Dict[str, Any]]) -> None:
        for cert in rows:
            name = (
                _clean(cert.get("certification_name"))
                or _clean(cert.get("name"))
                or "Unknown"
            )
            issuer = _clean(cert.get("issuing_organization"))
            catalog = await self.match_certification(name) if name != "Unknown" else None

            result = await self.db.execute(
                select(EmployeeCertification).where(
                    EmployeeCertification.employee_id == ctx.employee.id,
                    EmployeeCertification.certification_name == name,
                    EmployeeCertification.issuing_organization.is_(None)
                    if issuer is None
                    else EmployeeCertification.issuing_organization == issuer,
                )
            )
            existing = result.scalars().first()

            if existing:
                existing.certification_id = (
                    catalog.id if catalog is not None else existing.certification_id
                )
                existing.issue_date = parse_date(cert.get("issue_date")) or existing.issue_date
                existing.expiry_date = parse_date(cert.get("expiry_date")) or existing.expiry_date
                existing.credential_id = _clean(cert.get("credential_id")) or existing.credential_id
                existing.credential_url = _clean(cert.get("credential_url")) or existing.credential_url
                existing.is_active = True
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["certifications"] += 1
            else:
                self.db.add(
                    EmployeeCertification(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        certification_id=catalog.id if catalog is not None else None,
                        certification_name=name,
                        issuing_organization=issuer,
                        issue_date=parse_date(cert.get("issue_date")),
                        expiry_date=parse_date(cert.get("expiry_date")),
                        credential_id=_clean(cert.get("credential_id")),
                        credential_url=_clean(cert.get("credential_url")),
                        is_active=True,
                        source=SOURCE,
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["certifications"] += 1

    # Skills

    @staticmethod
    def iter_skill_entries(skills: Any) -> List[Tuple[str, Optional[float]]]:
        """Normalize the skills section to (name, confidence) pairs."""
        if isinstance(skills, dict):
            skills = skills.get("extracted_skills") or []
        if not isinstance(skills, list):
            return []

        entries = []
        for item in skills:
            if isinstance(item, str):
                name, confidence = _clean(item), None
            elif isinstance(item, dict):
                name = _clean(item.get("skill_name")) or _clean(item.get("name"))
                confidence = item.get("confidence")
            else:
                continue
            if not name:
                continue
            try:
                confidence = float(confidence) if confidence is not None else None
            except (TypeError, ValueError):
                confidence = None
            entries.append((name, confidence))
        return entries

    async def resolve_skill(self, name: str, tenant_id: str) -> Skill:
        """
        Global skill by name or display name, then tenant custom skill,
        else a new custom skill for the tenant.
        """
        needle = name.lower()
        result = await self.db.execute(
            select(Skill)
            .where(
                Skill.tenant_id.is_(None),
                or_(
                    func.lower(Skill.name) == needle,
                    func.lower(Skill.display_name) == needle,
                ),
            )
            .limit(1)
        )
        skill = result.scalar_one_or_none()
        if skill is not None:
            return skill

        result = await self.db.execute(
            select(Skill)
            .where(Skill.tenant_id == tenant_id, func.lower(Skill.name) == needle)
            .limit(1)
        )
        skill = result.scalar_one_or_none()
        if skill is not None:
            return skill

        skill = Skill(name=name, display_name=name, tenant_id=tenant_id, is_custom=True)
        self.db.add(skill)
        await self.db.flush()
        self.dictionary_created["custom_skills"] += 1
        logger.info("Custom skill created", skill=name, tenant_id=tenant_id)
        return skill

    async def _save_skills(self, ctx: "_ImportContext", skills: Any) -> None:
        for name, confidence in self.iter_skill_entries(skills):
            skill = await self.resolve_skill(name, ctx.tenant_id)

            result = await self.db.execute(
                select(EmployeeSkill).where(
                    EmployeeSkill.employee_id == ctx.employee.id,
                    EmployeeSkill.skill_id == skill.id,
                )
            )
            existing = result.scalar_one_or_none()

            if existing:
                if confidence is not None:
                    existing.proficiency_level = confidence
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["skills"] += 1
            else:
                self.db.add(
                    EmployeeSkill(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        skill_id=skill.id,
                        proficiency_level=confidence,
                        source=SOURCE,
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["skills"] += 1

    # Roles

    @staticmethod
    def role_hints(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        role = data.get("role")
        if isinstance(role, dict) and role:
            return [role]
        roles = data.get("roles")
        if isinstance(roles, list):
            return [r for r in roles if isinstance(r, dict) and r]
        return []

    @staticmethod
    def select_current_role(hints: List[Dict[str, Any]]) -> int:
        """Index of the hint marked current: highest seniority, then experience."""

        def rank(indexed):
            index, hint = indexed
            experience = hint.get("years_experience") or hint.get("total_years_experience") or 0
            try:
                experience = float(experience)
            except (TypeError, ValueError):
                experience = 0
            # Earlier hints win ties
            return (SENIORITY_ORDER.get(hint.get("seniority"), 0), experience, -index)

        return max(enumerate(hints), key=rank)[0]

    async def _save_roles(self, ctx: "_ImportContext", data: Dict[str, Any], years: int) -> None:
        valid = []
        for hint in self.role_hints(data):
            role_id = _as_int(hint.get("id_role") or hint.get("role_id"))
            sub_role_id = _as_int(hint.get("id_sub_role") or hint.get("sub_role_id"))
            if not role_id or not sub_role_id:
                logger.info("Role hint without taxonomy ids skipped", hint=hint)
                continue

            sub_role = await self.db.get(SubRole, sub_role_id)
            if sub_role is None or sub_role.role_id != role_id:
                logger.warning(
                    "Role hint not in taxonomy, skipped",
                    role_id=role_id,
                    sub_role_id=sub_role_id,
                )
                continue
            valid.append((hint, role_id, sub_role_id))

        if not valid:
            return
        # Current role is chosen among the hints that will actually be saved
        current_index = self.select_current_role([hint for hint, _, _ in valid])

        for index, (hint, role_id, sub_role_id) in enumerate(valid):
            is_current = index == current_index
            result = await self.db.execute(
                select(EmployeeRole).where(
                    EmployeeRole.employee_id == ctx.employee.id,
                    EmployeeRole.sub_role_id == sub_role_id,
                )
            )
            existing = result.scalars().first()

            if existing:
                existing.years_of_experience = years
                existing.seniority = hint.get("seniority") or existing.seniority
                existing.is_current = is_current or bool(existing.is_current)
                existing.cv_extraction_id = ctx.extraction_id
                existing.updated_at = utc_now()
                self.updated["roles"] += 1
            else:
                self.db.add(
                    EmployeeRole(
                        employee_id=ctx.employee.id,
                        tenant_id=ctx.tenant_id,
                        role_id=role_id,
                        sub_role_id=sub_role_id,
                        years_of_experience=years,
                        seniority=hint.get("seniority"),
                        is_current=is_current,
                        cv_extraction_id=ctx.extraction_id,
                    )
                )
                self.created["roles"] += 1

    # Domain knowledge

    async def _save_domain_knowledge(self, ctx: "_ImportContext", knowledge: Dict[str, Any]) -> None:
        if not isinstance(knowledge, dict):
            return
        for key, domain_type in DOMAIN_CATEGORIES:
            for value in knowledge.get(key) or []:
                value = _clean(value)
                if not value:
                    continue
                result = await self.db.execute(
                    select(EmployeeDomainKnowledge).where(
                        EmployeeDomainKnowledge.employee_id == ctx.employee.id,
                        EmployeeDomainKnowledge.domain_type == domain_type,
                        EmployeeDomainKnowledge.domain_value == value,
                    )
                )
                existing = result.scalar_one_or_none()

                if existing:
                    existing.source = SOURCE
                    existing.cv_extraction_id = ctx.extraction_id
                    existing.updated_at = utc_now()
                    self.updated["domain_knowledge"] += 1
                else:
                    self.db.add(
                        EmployeeDomainKnowledge(
                            employee_id=ctx.employee.id,
                            tenant_id=ctx.tenant_id,
                            domain_type=domain_type,
                            domain_value=value,
                            source=SOURCE,
                            cv_extraction_id=ctx.extraction_id,
                        )
                    )
                    self.created["domain_knowledge"] += 1


class _ImportContext:
    __slots__ = ("employee", "tenant_id", "extraction_id")

    def __init__(self, employee: Employee, tenant_id: str, extraction_id):
        self.employee = employee
        self.tenant_id = tenant_id
        self.extraction_id = extraction_id
