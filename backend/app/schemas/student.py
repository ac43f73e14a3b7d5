"""Pydantic schemas for student API endpoints."""
import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.student import StudentStatus


# ─── Create ───

class StudentCreate(BaseModel):
    """Single-student creation request.

    Identifier fields arrive as strings and dates as ``YYYY-MM-DD`` strings;
    the domain service parses them so that bad values surface as one readable
    message instead of a pydantic error list. The import pipeline builds this
    model directly from resolved row values.
    """

    first_names: str = Field(min_length=1, max_length=255)
    last_names: str = Field(min_length=1, max_length=255)
    document_id: str | None = Field(default=None, max_length=50)
    birth_date: str | None = None
    profile_photo_url: str | None = Field(default=None, max_length=500)
    gender: str | None = None
    nationality_country_id: str
    residence_country_id: str
    residence_city_id: str | None = None
    emails: list[EmailStr] = []
    phones: list[str] = []
    company_id: str | None = None
    job_title_category_id: str | None = None
    profession_id: str | None = None
    student_code: str | None = None
    status: str = StudentStatus.active.value
    cohort: str = Field(min_length=1, max_length=10)
    enrollment_date: str


# ─── Update (partial) ───

class StudentUpdate(BaseModel):
    first_names: str | None = Field(default=None, min_length=1, max_length=255)
    last_names: str | None = Field(default=None, min_length=1, max_length=255)
    document_id: str | None = Field(default=None, max_length=50)
    profile_photo_url: str | None = None
    gender: str | None = None
    residence_country_id: uuid.UUID | None = None
    residence_city_id: uuid.UUID | None = None
    emails: list[EmailStr] | None = None
    phones: list[str] | None = None
    company_id: uuid.UUID | None = None
    job_title_category_id: uuid.UUID | None = None
    profession_id: uuid.UUID | None = None
    student_code: str | None = None
    status: StudentStatus | None = None
    graduation_date: date | None = None


# ─── Detail ───

class StudentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    first_names: str
    last_names: str
    document_id: str | None
    birth_date: date | None
    profile_photo_url: str | None
    gender: str | None
    nationality_country_id: uuid.UUID
    residence_country_id: uuid.UUID
    residence_city_id: uuid.UUID | None
    emails: list[str]
    phones: list[str]
    company_id: uuid.UUID | None
    job_title_category_id: uuid.UUID | None
    profession_id: uuid.UUID | None
    student_code: str | None
    status: str
    cohort: str
    enrollment_date: date
    graduation_date: date | None
    created_at: datetime
    created_by: uuid.UUID | None
    updated_at: datetime
    updated_by: uuid.UUID | None


# ─── Paginated list response ───

class StudentListResponse(BaseModel):
    items: list[StudentOut]
    total: int
    page: int
    page_size: int
