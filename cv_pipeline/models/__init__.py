"""
Database models package
"""

from .catalog import (
    Certification,
    Company,
    Language,
    LanguageProficiencyLevel,
    Role,
    Skill,
    SubRole,
)
from .employee import (
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
from .cv_extraction import CVExtraction
from .cv_file import CVFile
from .llm_usage_log import LLMUsageLog

__all__ = [
    "Certification",
    "Company",
    "Language",
    "LanguageProficiencyLevel",
    "Role",
    "Skill",
    "SubRole",
    "Employee",
    "EmployeeAdditionalInfo",
    "EmployeeCertification",
    "EmployeeDomainKnowledge",
    "EmployeeEducation",
    "EmployeeLanguage",
    "EmployeeRole",
    "EmployeeSkill",
    "EmployeeWorkExperience",
    "CVExtraction",
    "CVFile",
    "LLMUsageLog",
]
