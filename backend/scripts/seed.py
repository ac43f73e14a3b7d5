"""Seed script: creates the reference catalogs coordinators usually import against.

Idempotent: every entry goes through the same find-or-create path the importer
uses, so re-running only reports what already exists.
Run: cd backend && python scripts/seed.py
"""
import asyncio
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.services.catalog_resolver import CatalogResolver
from app.services.catalog_store import CatalogStore

COUNTRIES = {
    "Colombia": ["Bogotá", "Medellín", "Cali", "Barranquilla"],
    "Perú": ["Lima", "Arequipa"],
    "Chile": ["Santiago", "Valparaíso"],
    "México": ["Ciudad de México", "Guadalajara", "Monterrey"],
    "España": ["Madrid", "Barcelona"],
}
PROFESSIONS = ["Ingeniería", "Medicina", "Derecho", "Administración", "Psicología"]
JOB_TITLE_CATEGORIES = ["Dirección", "Gerencia", "Coordinación", "Analista", "Docencia"]
UNIVERSITIES = [
    ("Universidad Nacional de Colombia", "Bogotá", "Colombia"),
    ("Universidad de los Andes", "Bogotá", "Colombia"),
    ("Pontificia Universidad Católica del Perú", "Lima", "Perú"),
    ("Universidad de Chile", "Santiago", "Chile"),
]


async def seed():
    engine = create_async_engine(settings.DATABASE_URL)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async with SessionLocal() as db:
        resolver = CatalogResolver(CatalogStore(db))

        print("\n── Countries / Cities ──")
        for country, cities in COUNTRIES.items():
            country_id = await resolver.resolve_country(country)
            for city in cities:
                await resolver.resolve_city(city, country_id)
            print(f"  {country}: {len(cities)} cities")
        await db.commit()

        print("\n── Professions / Job title categories ──")
        for name in PROFESSIONS:
            await resolver.resolve_profession(name)
        for name in JOB_TITLE_CATEGORIES:
            await resolver.resolve_job_title_category(name)
        await db.commit()

        print("\n── Universities ──")
        for name, city, country in UNIVERSITIES:
            country_id = await resolver.resolve_country(country)
            city_id = await resolver.resolve_city(city, country_id)
            await resolver.resolve_university(name, city_id, country_id)
            print(f"  {name}")
        await db.commit()

    await engine.dispose()
    print("\n✓ Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
