"""Catalog resolver: free-text names to stable catalog ids, auto-creating misses.

One resolver (and therefore one cache) is built per import run and thrown
away with it. Empty names resolve to ``None`` without touching the store.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class CatalogStoreProtocol(Protocol):
    async def find_country(self, name: str) -> uuid.UUID | None: ...
    async def create_country(self, name: str) -> uuid.UUID: ...
    async def find_city(self, name: str, country_id: uuid.UUID) -> uuid.UUID | None: ...
    async def create_city(self, name: str, country_id: uuid.UUID) -> uuid.UUID: ...
    async def find_profession(self, name: str) -> uuid.UUID | None: ...
    async def create_profession(self, name: str) -> uuid.UUID: ...
    async def find_job_title_category(self, name: str) -> uuid.UUID | None: ...
    async def create_job_title_category(self, name: str) -> uuid.UUID: ...
    async def find_university(self, name: str, country_id: uuid.UUID) -> uuid.UUID | None: ...
    async def create_university(
        self, name: str, city_id: uuid.UUID | None, country_id: uuid.UUID
    ) -> uuid.UUID: ...
    async def link_student_university(self, student_id: uuid.UUID, university_id: uuid.UUID) -> None: ...


def cache_key(*parts: object) -> str:
    """Lower-cased, trimmed parts joined with '|' (name first, then any parent scope)."""
    return "|".join(str(p).strip().lower() for p in parts)


@dataclass
class CatalogCache:
    """Per-run memo of resolved ids, one map per catalog kind. Append-only."""

    countries: dict[str, uuid.UUID] = field(default_factory=dict)
    cities: dict[str, uuid.UUID] = field(default_factory=dict)
    professions: dict[str, uuid.UUID] = field(default_factory=dict)
    job_title_categories: dict[str, uuid.UUID] = field(default_factory=dict)
    universities: dict[str, uuid.UUID] = field(default_factory=dict)


class CatalogResolver:
    def __init__(self, store: CatalogStoreProtocol, cache: CatalogCache | None = None) -> None:
        self.store = store
        self.cache = cache or CatalogCache()

    async def _resolve(
        self,
        bucket: dict[str, uuid.UUID],
        key: str,
        find: Callable[[], Awaitable[uuid.UUID | None]],
        create: Callable[[], Awaitable[uuid.UUID]],
    ) -> uuid.UUID:
        if key in bucket:
            return bucket[key]
        found = await find()
        if found is None:
            found = await create()
        # Store errors propagate before this line, so failures are never cached.
        bucket[key] = found
        return found

    async def resolve_country(self, name: str) -> uuid.UUID | None:
        name = name.strip()
        if not name:
            return None
        return await self._resolve(
            self.cache.countries,
            cache_key(name),
            lambda: self.store.find_country(name),
            lambda: self.store.create_country(name),
        )

    async def resolve_city(self, name: str, country_id: uuid.UUID) -> uuid.UUID | None:
        name = name.strip()
        if not name:
            return None
        return await self._resolve(
            self.cache.cities,
            cache_key(name, country_id),
            lambda: self.store.find_city(name, country_id),
            lambda: self.store.create_city(name, country_id),
        )

    async def resolve_profession(self, name: str) -> uuid.UUID | None:
        name = name.strip()
        if not name:
            return None
        return await self._resolve(
            self.cache.professions,
            cache_key(name),
            lambda: self.store.find_profession(name),
            lambda: self.store.create_profession(name),
        )

    async def resolve_job_title_category(self, name: str) -> uuid.UUID | None:
        name = name.strip()
        if not name:
            return None
        return await self._resolve(
            self.cache.job_title_categories,
            cache_key(name),
            lambda: self.store.find_job_title_category(name),
            lambda: self.store.create_job_title_category(name),
        )

    async def resolve_university(
        self, name: str, city_id: uuid.UUID | None, country_id: uuid.UUID
    ) -> uuid.UUID | None:
        # Keyed by country only; the city only matters when the university is first created.
        name = name.strip()
        if not name:
            return None
        return await self._resolve(
            self.cache.universities,
            cache_key(name, country_id),
            lambda: self.store.find_university(name, country_id),
            lambda: self.store.create_university(name, city_id, country_id),
        )
