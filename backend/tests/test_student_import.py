"""Tests for the bulk student import pipeline.

Student persistence is patched out (``existing_*`` pre-checks and
``create_student``); catalog lookups go through an in-memory store so that
resolution, caching and per-row error reporting run for real.
"""
import asyncio
import io
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openpyxl import Workbook

from app.core.config import settings
from app.schemas.imports import ImportRowError
from app.services.catalog_store import CatalogStoreError
from app.services.student_import import (
    ImportFileError,
    MissingColumnsError,
    import_students,
    map_headers,
    parse_rows,
    required_headers,
)
from app.services.student_service import StudentValidationError


# ─── Helpers ──────────────────────────────────────────────────────────────────

HEADER = "first_names,last_names,email,nationality_country_id,status,cohort,enrollment_date"


class MemoryCatalogStore:
    """Catalog store backed by a dict; ``fail_on`` kinds raise CatalogStoreError."""

    def __init__(self, fail_on=(), fail_link=False):
        self.rows: dict[tuple, uuid.UUID] = {}
        self.calls: list[str] = []
        self.links: list[tuple] = []
        self.fail_on = set(fail_on)
        self.fail_link = fail_link

    def _find(self, kind, name, scope=None):
        self.calls.append(f"find_{kind}")
        return self.rows.get((kind, name.strip().lower(), scope))

    def _create(self, kind, name, scope=None):
        self.calls.append(f"create_{kind}")
        if kind in self.fail_on:
            raise CatalogStoreError(f"failed to create {kind} {name.strip()!r}")
        new_id = uuid.uuid4()
        self.rows[(kind, name.strip().lower(), scope)] = new_id
        return new_id

    def id_of(self, kind, name, scope=None):
        return self.rows[(kind, name.strip().lower(), scope)]

    async def find_country(self, name):
        return self._find("country", name)

    async def create_country(self, name):
        return self._create("country", name)

    async def find_city(self, name, country_id):
        return self._find("city", name, country_id)

    async def create_city(self, name, country_id):
        return self._create("city", name, country_id)

    async def find_profession(self, name):
        return self._find("profession", name)

    async def create_profession(self, name):
        return self._create("profession", name)

    async def find_job_title_category(self, name):
        return self._find("job_title_category", name)

    async def create_job_title_category(self, name):
        return self._create("job_title_category", name)

    async def find_university(self, name, country_id):
        return self._find("university", name, country_id)

    async def create_university(self, name, city_id, country_id):
        return self._create("university", name, country_id)

    async def link_student_university(self, student_id, university_id):
        if self.fail_link:
            raise CatalogStoreError("failed to link student to university")
        self.links.append((student_id, university_id))


def _csv(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


async def _run(
    content: bytes,
    *,
    fmt: str = "csv",
    store: MemoryCatalogStore | None = None,
    existing_docs: set[str] | None = None,
    existing_emails: set[str] | None = None,
    create_side_effect=None,
    **kwargs,
):
    """Run import_students with student persistence patched out.

    Returns (result, create_mock, store).
    """
    store = store or MemoryCatalogStore()
    if create_side_effect is None:
        async def create_side_effect(db, body, acting_user_id=None):
            return SimpleNamespace(id=uuid.uuid4())

    create_mock = AsyncMock(side_effect=create_side_effect)
    with patch(
        "app.services.student_service.existing_document_ids",
        new=AsyncMock(return_value=existing_docs or set()),
    ), patch(
        "app.services.student_service.existing_emails",
        new=AsyncMock(return_value=existing_emails or set()),
    ), patch("app.services.student_service.create_student", new=create_mock):
        result = await import_students(MagicMock(), content, fmt, catalog_store=store, **kwargs)
    return result, create_mock, store


def _created_bodies(create_mock: AsyncMock) -> list:
    return [c.args[1] for c in create_mock.await_args_list]


# ─── Happy path ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_single_valid_row_creates_student_and_country():
    """One valid row → created=1, country created by name, residence = nationality."""
    result, create_mock, store = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
    ))

    assert result.total_rows == 1
    assert result.created == 1
    assert result.errors == []
    assert result.cancelled is False

    body = _created_bodies(create_mock)[0]
    colombia = store.id_of("country", "Colombia")
    assert body.nationality_country_id == str(colombia)
    assert body.residence_country_id == str(colombia)
    assert body.emails == ["ana@x.com"]
    assert body.birth_date is None


@pytest.mark.asyncio
async def test_spanish_status_alias_is_normalized():
    result, create_mock, _ = await _run(_csv(
        HEADER,
        "Luis,Gómez,luis@x.com,Chile,Activo,2024-1,2024-02-01",
        "Marta,Ruiz,marta@x.com,Chile,GRADUADO,2023-2,2023-08-01",
    ))

    assert result.created == 2
    assert [b.status for b in _created_bodies(create_mock)] == ["active", "graduated"]


@pytest.mark.asyncio
async def test_repeated_country_names_resolve_once():
    """'Colombia' and ' colombia ' across rows share one catalog entry."""
    result, create_mock, store = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        "Juan,Díaz,juan@x.com, colombia ,active,2024-1,2024-02-01",
        "Sofía,Mora,sofia@x.com,COLOMBIA,active,2024-1,2024-02-01",
    ))

    assert result.created == 3
    assert store.calls.count("create_country") == 1
    assert store.calls.count("find_country") == 1
    assert len({b.nationality_country_id for b in _created_bodies(create_mock)}) == 1


@pytest.mark.asyncio
async def test_uuid_reference_is_used_verbatim():
    country_id = uuid.uuid4()
    result, create_mock, store = await _run(_csv(
        HEADER,
        f"Ana,Pérez,ana@x.com,{country_id},active,2024-1,2024-02-01",
    ))

    assert result.created == 1
    assert store.calls == []
    assert _created_bodies(create_mock)[0].nationality_country_id == str(country_id)


@pytest.mark.asyncio
async def test_optional_references_resolved_by_name():
    header = HEADER + ",residence_country_id,residence_city_id,profession_id,job_title_category_id"
    result, create_mock, store = await _run(_csv(
        header,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,España,Madrid,Ingeniera,Gerencia",
    ))

    assert result.created == 1
    body = _created_bodies(create_mock)[0]
    spain = store.id_of("country", "España")
    assert body.residence_country_id == str(spain)
    assert body.residence_city_id == str(store.id_of("city", "Madrid", spain))
    assert body.profession_id == str(store.id_of("profession", "Ingeniera"))
    assert body.job_title_category_id == str(store.id_of("job_title_category", "Gerencia"))


@pytest.mark.asyncio
async def test_blank_rows_are_skipped():
    result, _, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        ",,,,,,",
        "",
    ))

    assert result.total_rows == 1
    assert result.created == 1


# ─── Row-level errors ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_empty_status_reports_required_field():
    result, create_mock, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,,2024-1,2024-02-01",
    ))

    assert result.created == 0
    assert result.errors == [
        ImportRowError(row=2, field="status", value="", message="required field is empty"),
    ]
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_status_rejected():
    result, _, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,expelled,2024-1,2024-02-01",
    ))

    assert len(result.errors) == 1
    assert result.errors[0].field == "status"
    assert result.errors[0].value == "expelled"
    assert result.errors[0].message.startswith("must be one of:")


@pytest.mark.asyncio
async def test_all_validation_errors_of_a_row_are_reported():
    """Missing first_names and a malformed email → two errors for row 2."""
    result, create_mock, _ = await _run(_csv(
        HEADER,
        ",Pérez,not-an-email,Colombia,active,2024-1,2024-02-01",
    ))

    assert result.created == 0
    assert [(e.row, e.field) for e in result.errors] == [(2, "first_names"), (2, "email")]
    assert result.errors[1].value == "not-an-email"
    assert result.errors[1].message == "invalid email format"
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_gender_company_and_code_checks():
    header = HEADER + ",gender,company_id,student_code"
    result, _, _ = await _run(_csv(
        header,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,X,acme,2024-1",
    ))

    by_field = {e.field: e for e in result.errors}
    assert by_field["gender"].message == "must be M or F"
    assert by_field["company_id"].message == "invalid identifier format"
    assert by_field["student_code"].message.startswith("invalid student_code format")


@pytest.mark.asyncio
async def test_duplicate_email_within_file_references_first_row():
    result, _, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        "Ana María,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
    ))

    assert result.created == 1
    assert result.errors == [
        ImportRowError(
            row=3, field="email", value="ana@x.com",
            message="duplicate: same email as row 2 in this file",
        ),
    ]


@pytest.mark.asyncio
async def test_duplicate_document_within_file_references_first_row():
    header = HEADER + ",document_id"
    result, _, _ = await _run(_csv(
        header,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,CC123",
        "Luis,Gómez,luis@x.com,Colombia,active,2024-1,2024-02-01,CC123",
    ))

    assert result.created == 1
    assert result.errors[0].row == 3
    assert result.errors[0].message == "duplicate: same document_id as row 2 in this file"


@pytest.mark.asyncio
async def test_duplicates_already_in_database():
    header = HEADER + ",document_id"
    result, create_mock, _ = await _run(
        _csv(
            header,
            "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,CC1",
            "Luis,Gómez,luis@x.com,Colombia,active,2024-1,2024-02-01,CC2",
        ),
        existing_docs={"CC1"},
        existing_emails={"luis@x.com"},
    )

    assert result.created == 0
    assert [(e.row, e.field, e.message) for e in result.errors] == [
        (2, "document_id", "duplicate: student with this document already exists"),
        (3, "email", "duplicate: student with this email already exists"),
    ]
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_stored_email_matches_differently_cased_domain():
    """Emails are stored with the domain lower-cased; 'Ana@X.COM' must still hit 'Ana@x.com'."""
    existing_mock = AsyncMock(return_value={"Ana@x.com"})
    with patch(
        "app.services.student_service.existing_document_ids", new=AsyncMock(return_value=set()),
    ), patch(
        "app.services.student_service.existing_emails", new=existing_mock,
    ), patch("app.services.student_service.create_student", new=AsyncMock()) as create_mock:
        result = await import_students(
            MagicMock(),
            _csv(HEADER, "Ana,Pérez,Ana@X.COM,Colombia,active,2024-1,2024-02-01"),
            "csv",
            catalog_store=MemoryCatalogStore(),
        )

    assert existing_mock.await_args.args[1] == ["Ana@x.com"]
    assert result.created == 0
    assert result.errors == [
        ImportRowError(
            row=2, field="email", value="Ana@X.COM",
            message="duplicate: student with this email already exists",
        ),
    ]
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_in_file_email_duplicate_ignores_domain_case():
    result, create_mock, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,Ana@X.COM,Colombia,active,2024-1,2024-02-01",
        "Ana,Pérez,Ana@x.com,Colombia,active,2024-1,2024-02-01",
    ))

    assert result.created == 1
    assert _created_bodies(create_mock)[0].emails == ["Ana@x.com"]
    assert result.errors[0].row == 3
    assert result.errors[0].value == "Ana@x.com"
    assert result.errors[0].message == "duplicate: same email as row 2 in this file"


@pytest.mark.asyncio
async def test_failed_row_does_not_claim_its_email():
    """Only created rows count for in-file duplicates."""
    calls = []

    async def reject_first(db, body, acting_user_id=None):
        calls.append(body)
        if len(calls) == 1:
            raise StudentValidationError("student must be at least 18 years old")
        return SimpleNamespace(id=uuid.uuid4())

    result, _, _ = await _run(
        _csv(
            HEADER,
            "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
            "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        ),
        create_side_effect=reject_first,
    )

    assert result.created == 1
    assert result.errors == [
        ImportRowError(row=2, field="_row", value="", message="student must be at least 18 years old"),
    ]


@pytest.mark.asyncio
async def test_catalog_failure_is_reported_on_its_column_and_run_continues():
    header = HEADER + ",profession_id"
    store = MemoryCatalogStore(fail_on={"profession"})
    result, _, _ = await _run(
        _csv(
            header,
            "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,Astronauta",
            "Luis,Gómez,luis@x.com,Colombia,active,2024-1,2024-02-01,",
        ),
        store=store,
    )

    assert result.created == 1
    assert len(result.errors) == 1
    assert result.errors[0].row == 2
    assert result.errors[0].field == "profession_id"
    assert result.errors[0].value == "Astronauta"


@pytest.mark.asyncio
async def test_schema_validation_error_reported_on_row():
    """A cohort longer than 10 characters fails the create schema."""
    result, create_mock, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-primer-semestre,2024-02-01",
    ))

    assert result.created == 0
    assert result.errors[0].field == "_row"
    assert "cohort" in result.errors[0].message
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_created_plus_failed_rows_equals_total():
    result, _, _ = await _run(_csv(
        HEADER,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        ",,bad,Colombia,,2024-1,2024-02-01",
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
        "Luis,Gómez,,Perú,withdrawn,2023-1,2023-02-01",
    ))

    failed_rows = {e.row for e in result.errors}
    assert result.created + len(failed_rows) == result.total_rows == 4
    assert failed_rows == {3, 4}


# ─── Residence fallback ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_residence_column_required_without_fallback():
    with pytest.raises(MissingColumnsError) as exc_info:
        await _run(
            _csv(HEADER, "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01"),
            residence_fallback=False,
        )
    assert exc_info.value.missing == ["residence_country_id"]


@pytest.mark.asyncio
async def test_empty_residence_is_row_error_without_fallback():
    header = HEADER + ",residence_country_id"
    result, _, _ = await _run(
        _csv(header, "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,"),
        residence_fallback=False,
    )

    assert result.errors == [
        ImportRowError(row=2, field="residence_country_id", value="", message="required field is empty"),
    ]


# ─── University linkage ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_university_is_resolved_and_linked():
    header = HEADER + ",universidad,universidad-ciudad,universidad-pais"
    result, _, store = await _run(_csv(
        header,
        "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,Universidad de Chile,Santiago,Chile",
    ))

    assert result.created == 1
    chile = store.id_of("country", "Chile")
    assert store.links and store.links[0][1] == store.id_of("university", "Universidad de Chile", chile)


@pytest.mark.asyncio
async def test_university_link_failure_keeps_student():
    header = HEADER + ",universidad"
    store = MemoryCatalogStore(fail_link=True)
    result, _, _ = await _run(
        _csv(header, "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01,Uniandes"),
        store=store,
    )

    assert result.created == 1
    assert result.errors == []


# ─── Cancellation and limits ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_event_stops_before_next_row():
    cancel = asyncio.Event()
    cancel.set()
    result, create_mock, _ = await _run(
        _csv(
            HEADER,
            "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
            "Luis,Gómez,luis@x.com,Colombia,active,2024-1,2024-02-01",
        ),
        cancel_event=cancel,
    )

    assert result.cancelled is True
    assert result.total_rows == 2
    assert result.created == 0
    create_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_too_many_rows_is_fatal():
    with patch.object(settings, "IMPORT_MAX_ROWS", 1):
        with pytest.raises(ImportFileError, match="maximum per import is 1"):
            await _run(_csv(
                HEADER,
                "Ana,Pérez,ana@x.com,Colombia,active,2024-1,2024-02-01",
                "Luis,Gómez,luis@x.com,Colombia,active,2024-1,2024-02-01",
            ))


# ─── File-level failures ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_headers_lists_all_missing_columns():
    with pytest.raises(MissingColumnsError) as exc_info:
        await _run(_csv("first_names,last_names,email", "Ana,Pérez,ana@x.com"))

    assert exc_info.value.missing == [
        "nationality_country_id", "status", "cohort", "enrollment_date",
    ]
    assert str(exc_info.value).startswith("missing required columns: nationality_country_id")


@pytest.mark.asyncio
async def test_header_only_file_is_fatal():
    with pytest.raises(ImportFileError, match="at least one data row"):
        await _run(_csv(HEADER))


@pytest.mark.asyncio
async def test_unsupported_format_is_fatal():
    with pytest.raises(ImportFileError, match="unsupported format"):
        await _run(b"whatever", fmt="json")


@pytest.mark.asyncio
async def test_malformed_csv_is_fatal():
    with pytest.raises(ImportFileError, match="failed to parse file"):
        await _run(b'first_names,last_names\n"Ana,Perez\n')


@pytest.mark.asyncio
async def test_garbage_xlsx_is_fatal():
    with pytest.raises(ImportFileError, match="failed to parse file"):
        await _run(b"not a zip archive", fmt="xlsx")


# ─── Parsing ──────────────────────────────────────────────────────────────────

def test_headers_are_case_and_space_insensitive():
    header_map = map_headers(
        [" First_Names", "LAST_NAMES ", "nationality_country_id", "Status", "cohort", "enrollment_date"],
        required_headers(True),
    )
    assert header_map["first_names"] == 0
    assert header_map["last_names"] == 1


def test_csv_bom_is_stripped():
    rows = parse_rows("\ufefffirst_names,last_names\nAna,Pérez\n".encode("utf-8"), "csv")
    assert rows[0] == ["first_names", "last_names"]


@pytest.mark.asyncio
async def test_non_utf8_csv_is_fatal_and_writes_nothing():
    """A Latin-1 export must not be imported with replacement characters."""
    store = MemoryCatalogStore()
    content = "\n".join([HEADER, "Ana,Pérez,ana@x.com,México,active,2024-1,2024-02-01", ""]).encode("latin-1")

    with pytest.raises(ImportFileError, match="file is not valid UTF-8"):
        await _run(content, store=store)
    assert store.calls == []


def _xlsx(rows: list[list]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.mark.asyncio
async def test_xlsx_rows_are_imported_with_cell_conversion():
    from datetime import date

    content = _xlsx([
        HEADER.split(","),
        ["Ana", "Pérez", "ana@x.com", "Colombia", "active", "2024-1", date(2024, 2, 1)],
        [None, None, None, None, None, None, None],
    ])
    result, create_mock, _ = await _run(content, fmt="xlsx")

    assert result.total_rows == 1
    assert result.created == 1
    assert _created_bodies(create_mock)[0].enrollment_date == "2024-02-01"
