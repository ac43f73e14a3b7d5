"""Student API endpoints: CRUD plus bulk import from CSV/XLSX."""
import logging
import os
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.deps import get_acting_user_id
from app.core.limiter import limiter
from app.db.session import get_session
from app.models.student import StudentStatus
from app.schemas.imports import ImportResult
from app.schemas.student import StudentCreate, StudentListResponse, StudentOut, StudentUpdate
from app.services import audit as audit_svc
from app.services import student_service
from app.services.student_import import ImportFileError, MissingColumnsError, import_students
from app.services.student_service import StudentNotFoundError, StudentValidationError

logger = logging.getLogger(__name__)

router = APIRouter()

EXTENSION_FORMATS = {".csv": "csv", ".xlsx": "xlsx"}


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found.")


# ─── POST /students/import ───
# Declared before /{student_id} routes so "import" is never read as an id.

@router.post(
    "/import",
    response_model=ImportResult,
    summary="Bulk import students from a CSV or XLSX file",
)
@limiter.limit(settings.IMPORT_RATE_LIMIT)
async def import_students_file(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_session)],
    acting_user_id: Annotated[uuid.UUID | None, Depends(get_acting_user_id)],
    file: UploadFile = File(...),
):
    ext = os.path.splitext(file.filename or "")[1].lower()
    fmt = EXTENSION_FORMATS.get(ext)
    if fmt is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file format: expected .csv or .xlsx, got '{ext or file.filename}'",
        )

    max_bytes = settings.IMPORT_MAX_FILE_BYTES
    too_large = HTTPException(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        detail=f"File exceeds {max_bytes} bytes.",
    )
    if file.size is not None and file.size > max_bytes:
        raise too_large
    # Read at most one byte past the limit.
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise too_large

    try:
        result = await import_students(db, content, fmt, acting_user_id)
    except MissingColumnsError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except ImportFileError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Import failed: {exc}")

    await audit_svc.log(
        db,
        action="student.import_completed",
        entity_type="student",
        actor_id=acting_user_id,
        after={
            "filename": file.filename,
            "total_rows": result.total_rows,
            "created": result.created,
            "errors": len(result.errors),
        },
    )
    await db.commit()
    logger.info("Import of %s committed: %d created, %d errors", file.filename, result.created, len(result.errors))
    return result


# ─── List students ───

@router.get(
    "",
    response_model=StudentListResponse,
    summary="List students with optional filters",
)
async def list_students(
    db: Annotated[AsyncSession, Depends(get_session)],
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status_filter: StudentStatus | None = Query(default=None, alias="status"),
    cohort: str | None = Query(default=None),
    residence_country_id: uuid.UUID | None = Query(default=None),
    search: str | None = Query(default=None),
):
    items, total = await student_service.list_students(
        db,
        status=status_filter.value if status_filter else None,
        cohort=cohort,
        residence_country_id=residence_country_id,
        search=search,
        page=page,
        page_size=page_size,
    )
    return StudentListResponse(
        items=[StudentOut.model_validate(s) for s in items],
        total=total,
        page=page,
        page_size=page_size,
    )


# ─── Get student ───

@router.get(
    "/{student_id}",
    response_model=StudentOut,
    summary="Get a student by id",
)
async def get_student(
    student_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
):
    try:
        student = await student_service.get_student(db, student_id)
    except StudentNotFoundError:
        raise _not_found()
    return StudentOut.model_validate(student)


# ─── Create student ───

@router.post(
    "",
    response_model=StudentOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a student",
)
async def create_student(
    body: StudentCreate,
    db: Annotated[AsyncSession, Depends(get_session)],
    acting_user_id: Annotated[uuid.UUID | None, Depends(get_acting_user_id)],
):
    try:
        student = await student_service.create_student(db, body, acting_user_id)
    except StudentValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    await audit_svc.log(
        db,
        action="student.created",
        entity_type="student",
        entity_id=student.id,
        actor_id=acting_user_id,
        after=body.model_dump(exclude_none=True, mode="json"),
    )
    await db.commit()
    await db.refresh(student)
    return StudentOut.model_validate(student)


# ─── Update student ───

@router.patch(
    "/{student_id}",
    response_model=StudentOut,
    summary="Partially update a student",
)
async def update_student(
    student_id: uuid.UUID,
    body: StudentUpdate,
    db: Annotated[AsyncSession, Depends(get_session)],
    acting_user_id: Annotated[uuid.UUID | None, Depends(get_acting_user_id)],
):
    updates = body.model_dump(exclude_unset=True, mode="json")
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update.")

    try:
        student = await student_service.update_student(db, student_id, body, acting_user_id)
    except StudentNotFoundError:
        raise _not_found()
    except StudentValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    await audit_svc.log(
        db,
        action="student.updated",
        entity_type="student",
        entity_id=student_id,
        actor_id=acting_user_id,
        after=updates,
    )
    await db.commit()
    await db.refresh(student)
    return StudentOut.model_validate(student)


# ─── Delete student (soft) ───

@router.delete(
    "/{student_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Soft-delete a student",
)
async def delete_student(
    student_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    acting_user_id: Annotated[uuid.UUID | None, Depends(get_acting_user_id)],
):
    try:
        await student_service.delete_student(db, student_id, acting_user_id)
    except StudentNotFoundError:
        raise _not_found()

    await audit_svc.log(
        db,
        action="student.deleted",
        entity_type="student",
        entity_id=student_id,
        actor_id=acting_user_id,
    )
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
