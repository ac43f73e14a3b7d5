import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import ActorMixin, Base, TimestampMixin, UUIDMixin


class StudentStatus(str, enum.Enum):
    active = "active"
    graduated = "graduated"
    withdrawn = "withdrawn"
    suspended = "suspended"


class Gender(str, enum.Enum):
    M = "M"
    F = "F"


class Student(Base, UUIDMixin, TimestampMixin, ActorMixin):
    __tablename__ = "students"
    __table_args__ = (
        # Only live students compete for a document number.
        Index(
            "uq_students_document_id_live",
            "document_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND document_id IS NOT NULL"),
        ),
        Index("ix_students_emails", "emails", postgresql_using="gin"),
    )

    first_names: Mapped[str] = mapped_column(String(255), nullable=False)
    last_names: Mapped[str] = mapped_column(String(255), nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    profile_photo_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(1), nullable=True)  # M, F

    nationality_country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=False
    )
    residence_country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=False, index=True
    )
    residence_city_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cities.id"), nullable=True
    )

    emails: Mapped[list[str]] = mapped_column(ARRAY(String(255)), nullable=False, server_default="{}")
    phones: Mapped[list[str]] = mapped_column(ARRAY(String(50)), nullable=False, server_default="{}")

    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id"), nullable=True
    )
    job_title_category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("job_title_categories.id"), nullable=True
    )
    profession_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("professions.id"), nullable=True
    )

    student_code: Mapped[str | None] = mapped_column(String(9), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=StudentStatus.active.value, index=True)
    cohort: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    enrollment_date: Mapped[date] = mapped_column(Date, nullable=False)
    graduation_date: Mapped[date | None] = mapped_column(Date, nullable=True)


class StudentUniversity(Base):
    """Link between a student and a university they attended."""

    __tablename__ = "student_universities"

    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), primary_key=True
    )
    university_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("universities.id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("now()"), nullable=False
    )
