import uuid

from sqlalchemy import ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, UUIDMixin

# Catalog names are unique on lower(f_unaccent(trim(name))) within their scope.
# f_unaccent is an IMMUTABLE wrapper around the unaccent extension (see migration 0001).
NORMALIZED_NAME = "lower(f_unaccent(trim(name)))"


class Country(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "countries"
    __table_args__ = (
        Index("uq_countries_normalized_name", text(NORMALIZED_NAME), unique=True),
    )

    code: Mapped[str] = mapped_column(String(3), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)

    cities: Mapped[list["City"]] = relationship("City", back_populates="country")


class City(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "cities"
    __table_args__ = (
        Index("uq_cities_country_normalized_name", "country_id", text(NORMALIZED_NAME), unique=True),
    )

    name: Mapped[str] = mapped_column(String(150), nullable=False)
    country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=False, index=True
    )

    country: Mapped["Country"] = relationship("Country", back_populates="cities")


class Profession(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "professions"
    __table_args__ = (
        Index("uq_professions_normalized_name", text(NORMALIZED_NAME), unique=True),
    )

    name: Mapped[str] = mapped_column(String(150), nullable=False)


class JobTitleCategory(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "job_title_categories"
    __table_args__ = (
        Index("uq_job_title_categories_normalized_name", text(NORMALIZED_NAME), unique=True),
    )

    name: Mapped[str] = mapped_column(String(150), nullable=False)


class University(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "universities"
    __table_args__ = (
        Index("uq_universities_country_normalized_name", "country_id", text(NORMALIZED_NAME), unique=True),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    country_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=False, index=True
    )
    city_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cities.id"), nullable=True
    )


class Company(Base, UUIDMixin, TimestampMixin):
    """Employer reference. Not auto-created by imports; rows must cite an existing id."""

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    country_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("countries.id"), nullable=True
    )
