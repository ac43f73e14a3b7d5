"""Student domain service and store queries.

Routes and the import pipeline both create students through
``create_student`` so that age, date, identifier and code rules are enforced
in one place. Functions flush but never commit; the caller owns the
transaction.
"""
import logging
import re
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.student import Gender, Student, StudentStatus
from app.schemas.student import StudentCreate, StudentUpdate

logger = logging.getLogger(__name__)

STUDENT_CODE_RE = re.compile(r"^[0-9]{4}[12][0-9]{4}$")
STUDENT_CODE_MESSAGE = "invalid student_code format, expected YYYYS#### (e.g. 202620190)"
STATUS_VALUES = {s.value for s in StudentStatus}


class StudentValidationError(ValueError):
    pass


class StudentNotFoundError(LookupError):
    pass


# ─── Parsing helpers ───

def _parse_date(value: str, field: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise StudentValidationError(f"invalid {field} format, expected YYYY-MM-DD: '{value}'")


def _parse_uuid(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise StudentValidationError(f"invalid {field}: '{value}'")


def _parse_optional_uuid(value: str | None, field: str) -> uuid.UUID | None:
    return _parse_uuid(value, field) if value else None


def age_on(birth_date: date, today: date) -> int:
    """Completed years between birth_date and today."""
    return today.year - birth_date.year - ((today.month, today.day) < (birth_date.month, birth_date.day))


def validate_student_code(code: str) -> None:
    if not STUDENT_CODE_RE.fullmatch(code):
        raise StudentValidationError(STUDENT_CODE_MESSAGE)


def _validate_gender(gender: str) -> str:
    g = gender.strip().upper()
    if g not in {x.value for x in Gender}:
        raise StudentValidationError("gender must be M or F")
    return g


# ─── Batch membership checks (used by the import pipeline) ───

async def existing_document_ids(db: AsyncSession, document_ids: list[str]) -> set[str]:
    """Return the subset of document_ids already held by a live student. One query."""
    if not document_ids:
        return set()
    result = await db.execute(
        select(Student.document_id).where(
            Student.document_id.in_(set(document_ids)),
            Student.deleted_at.is_(None),
        )
    )
    return {doc for doc in result.scalars().all() if doc}


async def existing_emails(db: AsyncSession, emails: list[str]) -> set[str]:
    """Return the subset of emails already listed on a live student. One query."""
    if not emails:
        return set()
    wanted = set(emails)
    result = await db.execute(
        select(func.unnest(Student.emails)).where(
            Student.emails.overlap(list(wanted)),
            Student.deleted_at.is_(None),
        )
    )
    return {email for email in result.scalars().all() if email in wanted}


# ─── CRUD ───

async def create_student(
    db: AsyncSession,
    body: StudentCreate,
    acting_user_id: uuid.UUID | None = None,
) -> Student:
    """Validate and insert one student.

    Raises:
        StudentValidationError: bad date/identifier/code/status, under-age,
            or a uniqueness conflict at insert time.
    """
    birth_date = None
    if body.birth_date:
        birth_date = _parse_date(body.birth_date, "birth_date")
        if age_on(birth_date, date.today()) < settings.STUDENT_MIN_AGE:
            raise StudentValidationError(f"student must be at least {settings.STUDENT_MIN_AGE} years old")

    enrollment_date = _parse_date(body.enrollment_date, "enrollment_date")

    if body.status not in STATUS_VALUES:
        raise StudentValidationError(
            f"invalid status '{body.status}', expected one of: {', '.join(sorted(STATUS_VALUES))}"
        )
    if body.student_code:
        validate_student_code(body.student_code)

    student = Student(
        id=uuid.uuid4(),
        first_names=body.first_names.strip(),
        last_names=body.last_names.strip(),
        document_id=body.document_id or None,
        birth_date=birth_date,
        profile_photo_url=body.profile_photo_url,
        gender=_validate_gender(body.gender) if body.gender else None,
        nationality_country_id=_parse_uuid(body.nationality_country_id, "nationality_country_id"),
        residence_country_id=_parse_uuid(body.residence_country_id, "residence_country_id"),
        residence_city_id=_parse_optional_uuid(body.residence_city_id, "residence_city_id"),
        emails=[str(e) for e in body.emails],
        phones=list(body.phones),
        company_id=_parse_optional_uuid(body.company_id, "company_id"),
        job_title_category_id=_parse_optional_uuid(body.job_title_category_id, "job_title_category_id"),
        profession_id=_parse_optional_uuid(body.profession_id, "profession_id"),
        student_code=body.student_code or None,
        status=body.status,
        cohort=body.cohort,
        enrollment_date=enrollment_date,
        created_by=acting_user_id,
        updated_by=acting_user_id,
    )

    try:
        async with db.begin_nested():
            db.add(student)
            await db.flush()
    except IntegrityError as exc:
        raise StudentValidationError(f"failed to create student: {exc.orig}") from exc

    return student


async def get_student(db: AsyncSession, student_id: uuid.UUID) -> Student:
    student = (
        await db.execute(
            select(Student).where(Student.id == student_id, Student.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if student is None:
        raise StudentNotFoundError(f"student {student_id} not found")
    return student


async def list_students(
    db: AsyncSession,
    *,
    status: str | None = None,
    cohort: str | None = None,
    residence_country_id: uuid.UUID | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Student], int]:
    conditions = [Student.deleted_at.is_(None)]
    if status:
        conditions.append(Student.status == status)
    if cohort:
        conditions.append(Student.cohort == cohort)
    if residence_country_id:
        conditions.append(Student.residence_country_id == residence_country_id)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Student.first_names.ilike(pattern), Student.last_names.ilike(pattern)))

    total = (
        await db.execute(select(func.count()).select_from(Student).where(*conditions))
    ).scalar_one()

    stmt = (
        select(Student)
        .where(*conditions)
        .order_by(Student.enrollment_date.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = list((await db.execute(stmt)).scalars().all())
    return items, total


async def update_student(
    db: AsyncSession,
    student_id: uuid.UUID,
    body: StudentUpdate,
    acting_user_id: uuid.UUID | None = None,
) -> Student:
    student = await get_student(db, student_id)

    updates = body.model_dump(exclude_unset=True)
    if "emails" in updates:
        if not updates["emails"]:
            raise StudentValidationError("at least one email is required")
        updates["emails"] = [str(e) for e in updates["emails"]]
    if updates.get("student_code"):
        validate_student_code(updates["student_code"])
    if updates.get("gender"):
        updates["gender"] = _validate_gender(updates["gender"])
    if updates.get("status") is not None:
        updates["status"] = StudentStatus(updates["status"]).value

    for field, value in updates.items():
        setattr(student, field, value)
    student.updated_by = acting_user_id

    try:
        async with db.begin_nested():
            db.add(student)
            await db.flush()
    except IntegrityError as exc:
        raise StudentValidationError(f"failed to update student: {exc.orig}") from exc

    return student


async def delete_student(
    db: AsyncSession,
    student_id: uuid.UUID,
    acting_user_id: uuid.UUID | None = None,
) -> Student:
    """Soft delete: the row stays, but get/list/duplicate checks stop seeing it."""
    student = await get_student(db, student_id)
    student.deleted_at = datetime.now(timezone.utc)
    student.deleted_by = acting_user_id
    db.add(student)
    await db.flush()
    return student
