"""Catalog store: find-by-name and insert-if-absent for the lookup tables.

Name matching is trimmed, case-insensitive and accent-insensitive, evaluated
by Postgres through ``lower(f_unaccent(trim(name)))`` on both sides so the
unique expression indexes back every lookup.
"""
import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.catalog import City, Country, JobTitleCategory, Profession, University
from app.models.student import StudentUniversity

logger = logging.getLogger(__name__)


class CatalogStoreError(Exception):
    """A catalog entry could be neither found nor created."""


def _normalized(expr: Any):
    return func.lower(func.f_unaccent(func.trim(expr)))


def country_code(name: str) -> str:
    """Short code derived from the name: first three characters, upper-cased."""
    return name.strip().upper()[:3]


class CatalogStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ─── Generic find / create ───

    async def _find(self, model, name: str, **scope: uuid.UUID) -> uuid.UUID | None:
        stmt = select(model.id).where(_normalized(model.name) == _normalized(name))
        for column, value in scope.items():
            stmt = stmt.where(getattr(model, column) == value)
        # Savepoint: a failed lookup must not abort the import's transaction.
        async with self.db.begin_nested():
            result = await self.db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def _create(self, model, kind: str, values: dict[str, Any], **scope: uuid.UUID) -> uuid.UUID:
        """Insert a catalog row; on a unique conflict return the row that won the race.

        ON CONFLICT DO NOTHING yields no id when another transaction already
        holds the normalized name. We then re-read by name; if that still
        finds nothing the conflict was on a different unique column.
        """
        stmt = (
            pg_insert(model)
            .values(**values, **scope)
            .on_conflict_do_nothing()
            .returning(model.id)
        )
        try:
            async with self.db.begin_nested():
                new_id = (await self.db.execute(stmt)).scalar_one_or_none()
        except IntegrityError as exc:
            raise CatalogStoreError(f"failed to create {kind} {values['name']!r}: {exc.orig}") from exc

        if new_id is not None:
            logger.info("Catalog: created %s %r → %s", kind, values["name"], new_id)
            return new_id

        existing = await self._find(model, values["name"], **scope)
        if existing is None:
            raise CatalogStoreError(
                f"failed to create {kind} {values['name']!r}: conflicts with an existing entry"
            )
        logger.info("Catalog: %s %r already existed (concurrent create) → %s", kind, values["name"], existing)
        return existing

    # ─── Countries ───

    async def find_country(self, name: str) -> uuid.UUID | None:
        return await self._find(Country, name)

    async def create_country(self, name: str) -> uuid.UUID:
        name = name.strip()
        return await self._create(Country, "country", {"name": name, "code": country_code(name)})

    # ─── Cities (scoped to a country) ───

    async def find_city(self, name: str, country_id: uuid.UUID) -> uuid.UUID | None:
        return await self._find(City, name, country_id=country_id)

    async def create_city(self, name: str, country_id: uuid.UUID) -> uuid.UUID:
        return await self._create(City, "city", {"name": name.strip()}, country_id=country_id)

    # ─── Professions ───

    async def find_profession(self, name: str) -> uuid.UUID | None:
        return await self._find(Profession, name)

    async def create_profession(self, name: str) -> uuid.UUID:
        return await self._create(Profession, "profession", {"name": name.strip()})

    # ─── Job title categories ───

    async def find_job_title_category(self, name: str) -> uuid.UUID | None:
        return await self._find(JobTitleCategory, name)

    async def create_job_title_category(self, name: str) -> uuid.UUID:
        return await self._create(JobTitleCategory, "job_title_category", {"name": name.strip()})

    # ─── Universities (scoped to a country, optionally placed in a city) ───

    async def find_university(self, name: str, country_id: uuid.UUID) -> uuid.UUID | None:
        return await self._find(University, name, country_id=country_id)

    async def create_university(
        self, name: str, city_id: uuid.UUID | None, country_id: uuid.UUID
    ) -> uuid.UUID:
        return await self._create(
            University, "university", {"name": name.strip(), "city_id": city_id}, country_id=country_id
        )

    # ─── Student ↔ university link ───

    async def link_student_university(self, student_id: uuid.UUID, university_id: uuid.UUID) -> None:
        stmt = (
            pg_insert(StudentUniversity)
            .values(student_id=student_id, university_id=university_id)
            .on_conflict_do_nothing()
        )
        try:
            async with self.db.begin_nested():
                await self.db.execute(stmt)
        except IntegrityError as exc:
            raise CatalogStoreError(f"failed to link student {student_id} to university {university_id}") from exc
