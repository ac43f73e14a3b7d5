from app.models.catalog import Country, City, Profession, JobTitleCategory, University, Company
from app.models.student import Student, StudentUniversity, StudentStatus, Gender
from app.models.audit import AuditLog

__all__ = [
    "Country", "City", "Profession", "JobTitleCategory", "University", "Company",
    "Student", "StudentUniversity", "StudentStatus", "Gender",
    "AuditLog",
]
