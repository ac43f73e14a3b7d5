"""create students and catalog tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:40:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# unaccent() is only STABLE; an IMMUTABLE wrapper lets it back expression indexes.
F_UNACCENT = """
CREATE OR REPLACE FUNCTION f_unaccent(text) RETURNS text
LANGUAGE sql IMMUTABLE PARALLEL SAFE STRICT
AS $$ SELECT public.unaccent('public.unaccent', $1) $$
"""

NORMALIZED_NAME = "lower(f_unaccent(trim(name)))"


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS unaccent")
    op.execute(F_UNACCENT)

    op.create_table(
        'countries',
        _uuid_pk(),
        sa.Column('code', sa.String(length=3), nullable=False),
        sa.Column('name', sa.String(length=150), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_countries_code'),
    )
    op.execute(f"CREATE UNIQUE INDEX uq_countries_normalized_name ON countries ({NORMALIZED_NAME})")

    op.create_table(
        'cities',
        _uuid_pk(),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('country_id', postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['country_id'], ['countries.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cities_country_id', 'cities', ['country_id'])
    op.execute(f"CREATE UNIQUE INDEX uq_cities_country_normalized_name ON cities (country_id, {NORMALIZED_NAME})")

    for table in ('professions', 'job_title_categories'):
        op.create_table(
            table,
            _uuid_pk(),
            sa.Column('name', sa.String(length=150), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )
        op.execute(f"CREATE UNIQUE INDEX uq_{table}_normalized_name ON {table} ({NORMALIZED_NAME})")

    op.create_table(
        'universities',
        _uuid_pk(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('country_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('city_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['country_id'], ['countries.id']),
        sa.ForeignKeyConstraint(['city_id'], ['cities.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_universities_country_id', 'universities', ['country_id'])
    op.execute(
        f"CREATE UNIQUE INDEX uq_universities_country_normalized_name ON universities (country_id, {NORMALIZED_NAME})"
    )

    op.create_table(
        'companies',
        _uuid_pk(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('country_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['country_id'], ['countries.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_companies_name', 'companies', ['name'])

    op.create_table(
        'students',
        _uuid_pk(),
        sa.Column('first_names', sa.String(length=255), nullable=False),
        sa.Column('last_names', sa.String(length=255), nullable=False),
        sa.Column('document_id', sa.String(length=50), nullable=True),
        sa.Column('birth_date', sa.Date(), nullable=True),
        sa.Column('profile_photo_url', sa.String(length=500), nullable=True),
        sa.Column('gender', sa.String(length=1), nullable=True),
        sa.Column('nationality_country_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('residence_country_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('residence_city_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('emails', postgresql.ARRAY(sa.String(length=255)), server_default='{}', nullable=False),
        sa.Column('phones', postgresql.ARRAY(sa.String(length=50)), server_default='{}', nullable=False),
        sa.Column('company_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('job_title_category_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('profession_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('student_code', sa.String(length=9), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('cohort', sa.String(length=10), nullable=False),
        sa.Column('enrollment_date', sa.Date(), nullable=False),
        sa.Column('graduation_date', sa.Date(), nullable=True),
        *_timestamps(),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('updated_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.CheckConstraint("status IN ('active', 'graduated', 'withdrawn', 'suspended')", name='ck_students_status'),
        sa.CheckConstraint("gender IS NULL OR gender IN ('M', 'F')", name='ck_students_gender'),
        sa.ForeignKeyConstraint(['nationality_country_id'], ['countries.id']),
        sa.ForeignKeyConstraint(['residence_country_id'], ['countries.id']),
        sa.ForeignKeyConstraint(['residence_city_id'], ['cities.id']),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.ForeignKeyConstraint(['job_title_category_id'], ['job_title_categories.id']),
        sa.ForeignKeyConstraint(['profession_id'], ['professions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_students_status', 'students', ['status'])
    op.create_index('ix_students_cohort', 'students', ['cohort'])
    op.create_index('ix_students_residence_country_id', 'students', ['residence_country_id'])
    op.create_index('ix_students_emails', 'students', ['emails'], postgresql_using='gin')
    op.create_index(
        'uq_students_document_id_live', 'students', ['document_id'], unique=True,
        postgresql_where=sa.text('deleted_at IS NULL AND document_id IS NOT NULL'),
    )

    op.create_table(
        'student_universities',
        sa.Column('student_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('university_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['student_id'], ['students.id']),
        sa.ForeignKeyConstraint(['university_id'], ['universities.id']),
        sa.PrimaryKeyConstraint('student_id', 'university_id'),
    )

    op.create_table(
        'audit_logs',
        _uuid_pk(),
        sa.Column('actor_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('entity_type', sa.String(length=100), nullable=False),
        sa.Column('entity_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('before_state', sa.Text(), nullable=True),
        sa.Column('after_state', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('student_universities')
    op.drop_table('students')
    op.drop_table('companies')
    op.drop_table('universities')
    op.drop_table('job_title_categories')
    op.drop_table('professions')
    op.drop_table('cities')
    op.drop_table('countries')
    op.execute("DROP FUNCTION IF EXISTS f_unaccent(text)")
