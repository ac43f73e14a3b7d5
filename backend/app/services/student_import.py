"""Bulk student import from CSV / XLSX files.

A run goes parse → header check → batch duplicate pre-check → per-row
processing → aggregate. Parse and header failures abort the run
(``ImportFileError``). Everything after that is per-row: a bad row adds one
or more ``ImportRowError`` entries and the run moves on.

Rows are processed strictly in file order because intra-file duplicate
detection depends on which earlier rows were actually created.
"""
import asyncio
import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from email_validator import EmailNotValidError, validate_email
from openpyxl import load_workbook
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.schemas.imports import ImportResult, ImportRowError
from app.schemas.student import StudentCreate
from app.services import student_service
from app.services.catalog_resolver import CatalogResolver, CatalogStoreProtocol
from app.services.catalog_store import CatalogStore, CatalogStoreError
from app.services.student_service import STATUS_VALUES, STUDENT_CODE_MESSAGE, STUDENT_CODE_RE, StudentValidationError

logger = logging.getLogger(__name__)

# ─── Constants ───

SUPPORTED_FORMATS = ("csv", "xlsx")

BASE_REQUIRED_HEADERS = [
    "first_names", "last_names", "nationality_country_id", "status", "cohort", "enrollment_date",
]

COLUMNS = [
    "first_names", "last_names", "document_id", "birth_date", "gender", "email", "phone",
    "nationality_country_id", "residence_country_id", "residence_city_id", "company_id",
    "job_title_category_id", "profession_id", "student_code", "status", "cohort", "enrollment_date",
    # optional university linkage
    "universidad", "universidad-ciudad", "universidad-pais",
]

STATUS_ALIASES = {
    "activo": "active",
    "graduado": "graduated",
    "retirado": "withdrawn",
    "suspendido": "suspended",
}

ROW_ERROR_FIELD = "_row"
MSG_REQUIRED = "required field is empty"
MSG_INVALID_ID = "invalid identifier format"


class ImportFileError(ValueError):
    """The file as a whole cannot be imported; no rows were processed."""


class MissingColumnsError(ImportFileError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"missing required columns: {', '.join(missing)}")


# ─── Parsing ───

def _cell_to_str(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_csv(content: bytes) -> list[list[str]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ImportFileError("file is not valid UTF-8") from exc
    reader = csv.reader(io.StringIO(text, newline=""), skipinitialspace=True, strict=True)
    try:
        return list(reader)
    except csv.Error as exc:
        raise ImportFileError(f"failed to parse file: {exc}") from exc


def parse_xlsx(content: bytes) -> list[list[str]]:
    """Read the first worksheet as strings (values only, formulas evaluated as cached)."""
    try:
        wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except Exception as exc:  # openpyxl raises zipfile/KeyError/InvalidFileException variants
        raise ImportFileError(f"failed to parse file: {exc}") from exc
    try:
        if not wb.worksheets:
            raise ImportFileError("no sheets found in xlsx file")
        ws = wb.worksheets[0]
        return [[_cell_to_str(c) for c in row] for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def parse_rows(content: bytes, fmt: str) -> list[list[str]]:
    """Parse file bytes into rows, dropping rows where every cell is blank."""
    if fmt == "csv":
        rows = parse_csv(content)
    elif fmt == "xlsx":
        rows = parse_xlsx(content)
    else:
        raise ImportFileError(f"unsupported format: {fmt}, expected csv or xlsx")
    return [r for r in rows if any(cell.strip() for cell in r)]


def required_headers(residence_fallback: bool) -> list[str]:
    if residence_fallback:
        return list(BASE_REQUIRED_HEADERS)
    return BASE_REQUIRED_HEADERS[:3] + ["residence_country_id"] + BASE_REQUIRED_HEADERS[3:]


def map_headers(header_row: list[str], required: list[str]) -> dict[str, int]:
    """Normalized header name → column index. Later duplicates win."""
    header_map = {h.strip().lower(): i for i, h in enumerate(header_row)}
    missing = [r for r in required if r not in header_map]
    if missing:
        raise MissingColumnsError(missing)
    return header_map


def get_field(row: list[str], header_map: dict[str, int], name: str) -> str:
    idx = header_map.get(name)
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()


# ─── Field helpers ───

def normalize_status(value: str) -> str:
    lowered = value.strip().lower()
    return STATUS_ALIASES.get(lowered, lowered)


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def normalize_email(value: str) -> str | None:
    """Normalized form as stored on the student (domain lower-cased), or None if invalid.

    Duplicate checks, the seen set and the create request all use this form.
    """
    if not value:
        return None
    try:
        return validate_email(value, check_deliverability=False).normalized
    except EmailNotValidError:
        return None


# ─── Run state ───

@dataclass
class _ImportRun:
    db: AsyncSession
    store: CatalogStoreProtocol
    resolver: CatalogResolver
    header_map: dict[str, int]
    acting_user_id: uuid.UUID | None
    residence_fallback: bool
    existing_docs: set[str]
    existing_emails: set[str]
    seen_docs: dict[str, int] = field(default_factory=dict)  # value → row that created it
    seen_emails: dict[str, int] = field(default_factory=dict)


class _RowErrors(list):
    def __init__(self, row_num: int) -> None:
        super().__init__()
        self.row_num = row_num

    def add(self, field_name: str, value: str, message: str) -> None:
        self.append(ImportRowError(row=self.row_num, field=field_name, value=value, message=message))


# ─── Pipeline ───

async def import_students(
    db: AsyncSession,
    content: bytes,
    fmt: str,
    acting_user_id: uuid.UUID | None = None,
    *,
    catalog_store: CatalogStoreProtocol | None = None,
    residence_fallback: bool | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ImportResult:
    """Import students from a CSV/XLSX upload.

    Args:
        db: Async session. Rows are flushed inside savepoints; nothing is
            committed here; the caller commits once the result is returned.
        content: Raw file bytes.
        fmt: "csv" or "xlsx".
        acting_user_id: Recorded as created_by on every student (None = anonymous).
        catalog_store: Catalog backend; defaults to the database-backed store on ``db``.
        residence_fallback: When true, an empty residence country falls back to
            nationality and the column is optional. Defaults to settings.
        cancel_event: Checked before each row; once set the run stops and the
            result is flagged ``cancelled``.

    Raises:
        ImportFileError: unparseable file, missing headers, no data rows, too many rows.
    """
    if residence_fallback is None:
        residence_fallback = settings.IMPORT_RESIDENCE_FALLBACK

    rows = parse_rows(content, fmt)
    if len(rows) < 2:
        raise ImportFileError("file must have a header row and at least one data row")

    header_map = map_headers(rows[0], required_headers(residence_fallback))
    data_rows = rows[1:]
    if len(data_rows) > settings.IMPORT_MAX_ROWS:
        raise ImportFileError(
            f"file has {len(data_rows)} data rows, the maximum per import is {settings.IMPORT_MAX_ROWS}"
        )

    # Batch duplicate pre-check: one query per kind for the whole file
    all_docs = [d for d in (get_field(r, header_map, "document_id") for r in data_rows) if d]
    all_emails = [e for e in (normalize_email(get_field(r, header_map, "email")) for r in data_rows) if e]
    existing_docs = await student_service.existing_document_ids(db, all_docs)
    existing_emails = await student_service.existing_emails(db, all_emails)

    store = catalog_store or CatalogStore(db)
    run = _ImportRun(
        db=db,
        store=store,
        resolver=CatalogResolver(store),
        header_map=header_map,
        acting_user_id=acting_user_id,
        residence_fallback=residence_fallback,
        existing_docs=existing_docs,
        existing_emails=existing_emails,
    )
    result = ImportResult(total_rows=len(data_rows))
    logger.info("Student import started: format=%s rows=%d", fmt, len(data_rows))

    for idx, row in enumerate(data_rows, start=2):  # row 1 = header
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            logger.info("Student import cancelled before row %d", idx)
            break
        row_errors = await _process_row(run, row, idx)
        if row_errors:
            result.errors.extend(row_errors)
        else:
            result.created += 1

    logger.info(
        "Student import finished: total=%d created=%d errors=%d cancelled=%s",
        result.total_rows, result.created, len(result.errors), result.cancelled,
    )
    return result


async def _process_row(run: _ImportRun, row: list[str], row_num: int) -> list[ImportRowError]:
    values = {name: get_field(row, run.header_map, name) for name in COLUMNS}
    values["status"] = normalize_status(values["status"])
    values["email_normalized"] = normalize_email(values["email"]) or ""

    errors = _validate_row(run, values, row_num)
    if errors:
        return errors

    errors = _RowErrors(row_num)
    resolved = await _resolve_references(run, values, errors)
    if resolved is None:
        return errors

    try:
        body = StudentCreate(
            first_names=values["first_names"],
            last_names=values["last_names"],
            document_id=values["document_id"] or None,
            birth_date=values["birth_date"] or None,
            gender=values["gender"].upper() or None,
            nationality_country_id=str(resolved["nationality_country_id"]),
            residence_country_id=str(resolved["residence_country_id"]),
            residence_city_id=_str_or_none(resolved["residence_city_id"]),
            emails=[values["email_normalized"]] if values["email_normalized"] else [],
            phones=[values["phone"]] if values["phone"] else [],
            company_id=values["company_id"] or None,
            job_title_category_id=_str_or_none(resolved["job_title_category_id"]),
            profession_id=_str_or_none(resolved["profession_id"]),
            student_code=values["student_code"] or None,
            status=values["status"],
            cohort=values["cohort"],
            enrollment_date=values["enrollment_date"],
        )
        student = await student_service.create_student(run.db, body, run.acting_user_id)
    except ValidationError as exc:
        errors.add(ROW_ERROR_FIELD, "", _format_validation_error(exc))
        return errors
    except (StudentValidationError, SQLAlchemyError) as exc:
        errors.add(ROW_ERROR_FIELD, "", str(exc))
        return errors

    if values["document_id"]:
        run.seen_docs[values["document_id"]] = row_num
    if values["email_normalized"]:
        run.seen_emails[values["email_normalized"]] = row_num

    if values["universidad"]:
        await _link_university(run, student.id, values, resolved["nationality_country_id"], row_num)

    return errors


def _validate_row(run: _ImportRun, values: dict[str, str], row_num: int) -> _RowErrors:
    errors = _RowErrors(row_num)

    for name in ("first_names", "last_names"):
        if not values[name]:
            errors.add(name, "", MSG_REQUIRED)

    email = values["email"]
    email_key = values["email_normalized"]
    if email and not email_key:
        errors.add("email", email, "invalid email format")

    required = ["nationality_country_id", "status", "cohort", "enrollment_date"]
    if not run.residence_fallback:
        required.insert(1, "residence_country_id")
    for name in required:
        if not values[name]:
            errors.add(name, "", MSG_REQUIRED)
    if values["status"] and values["status"] not in STATUS_VALUES:
        errors.add("status", values["status"], f"must be one of: {', '.join(sorted(STATUS_VALUES))}")

    gender = values["gender"]
    if gender and gender.upper() not in ("M", "F"):
        errors.add("gender", gender, "must be M or F")

    if values["company_id"] and not is_uuid(values["company_id"]):
        errors.add("company_id", values["company_id"], MSG_INVALID_ID)

    code = values["student_code"]
    if code and not STUDENT_CODE_RE.fullmatch(code):
        errors.add("student_code", code, STUDENT_CODE_MESSAGE)

    document_id = values["document_id"]
    if document_id:
        if document_id in run.existing_docs:
            errors.add("document_id", document_id, "duplicate: student with this document already exists")
        elif document_id in run.seen_docs:
            errors.add(
                "document_id", document_id,
                f"duplicate: same document_id as row {run.seen_docs[document_id]} in this file",
            )
    if email_key:
        if email_key in run.existing_emails:
            errors.add("email", email, "duplicate: student with this email already exists")
        elif email_key in run.seen_emails:
            errors.add("email", email, f"duplicate: same email as row {run.seen_emails[email_key]} in this file")

    return errors


async def _resolve_id(resolve, field_name: str, raw: str, errors: _RowErrors, *scope) -> tuple[bool, uuid.UUID | None]:
    """Use raw verbatim when it is already a UUID, otherwise resolve it by name.

    Returns (ok, id). On a store failure the error is recorded and ok is False.
    """
    if not raw:
        return True, None
    if is_uuid(raw):
        return True, uuid.UUID(raw)
    try:
        return True, await resolve(raw, *scope)
    except (CatalogStoreError, SQLAlchemyError) as exc:
        errors.add(field_name, raw, str(exc))
        return False, None


async def _resolve_references(
    run: _ImportRun, values: dict[str, str], errors: _RowErrors
) -> dict[str, uuid.UUID | None] | None:
    resolver = run.resolver
    resolved: dict[str, uuid.UUID | None] = {}

    ok, resolved["nationality_country_id"] = await _resolve_id(
        resolver.resolve_country, "nationality_country_id", values["nationality_country_id"], errors
    )
    if not ok:
        return None

    if values["residence_country_id"]:
        ok, resolved["residence_country_id"] = await _resolve_id(
            resolver.resolve_country, "residence_country_id", values["residence_country_id"], errors
        )
        if not ok:
            return None
    else:
        resolved["residence_country_id"] = resolved["nationality_country_id"]

    ok, resolved["residence_city_id"] = await _resolve_id(
        resolver.resolve_city, "residence_city_id", values["residence_city_id"], errors,
        resolved["residence_country_id"],
    )
    if not ok:
        return None

    ok, resolved["profession_id"] = await _resolve_id(
        resolver.resolve_profession, "profession_id", values["profession_id"], errors
    )
    if not ok:
        return None

    ok, resolved["job_title_category_id"] = await _resolve_id(
        resolver.resolve_job_title_category, "job_title_category_id", values["job_title_category_id"], errors
    )
    if not ok:
        return None

    return resolved


async def _link_university(
    run: _ImportRun,
    student_id: uuid.UUID,
    values: dict[str, str],
    nationality_country_id: uuid.UUID,
    row_num: int,
) -> None:
    """Best-effort: the student already exists, so failures here are logged, not reported.

    TODO: decide with coordinators whether a failed university link should
    surface as a row warning in ImportResult instead of only in the logs.
    """
    resolver = run.resolver
    try:
        country_id = nationality_country_id
        country_raw = values["universidad-pais"]
        if country_raw:
            country_id = uuid.UUID(country_raw) if is_uuid(country_raw) else await resolver.resolve_country(country_raw)

        city_id = None
        city_raw = values["universidad-ciudad"]
        if city_raw:
            city_id = uuid.UUID(city_raw) if is_uuid(city_raw) else await resolver.resolve_city(city_raw, country_id)

        university_id = await resolver.resolve_university(values["universidad"], city_id, country_id)
        await run.store.link_student_university(student_id, university_id)
    except (CatalogStoreError, SQLAlchemyError) as exc:
        logger.warning(
            "Row %d: university link skipped for %r: %s", row_num, values["universidad"], exc
        )


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
