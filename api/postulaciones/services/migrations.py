"""Forward-only schema migrations for the postulaciones tables.

Migrations are applied in version order under a transaction-scoped advisory
lock and recorded in ``schema_migrations``; a version that is already recorded
is never re-applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

# Arbitrary constant shared by every process that migrates this database.
MIGRATION_LOCK_KEY = 7_340_211

SCHEMA_MIGRATIONS_TABLE = """
create table if not exists schema_migrations (
  version integer primary key,
  name text not null,
  applied_at timestamptz not null default now()
)
"""


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="create_usuarios",
        statements=(
            """
            create table if not exists usuarios (
              id bigserial primary key,
              email text not null,
              nombre text,
              apellido text,
              telefono text,
              rut text,
              ciudad text,
              direccion text,
              foto_url text,
              valor_cuota integer,
              estado_socio text,
              fecha_ingreso timestamptz,
              lista_negra boolean not null default false,
              motivo_lista_negra text,
              password_hash text,
              role text not null default 'user',
              activo boolean not null default true,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now()
            )
            """,
            "create unique index if not exists idx_usuarios_email_lower on usuarios (lower(email))",
        ),
    ),
    Migration(
        version=2,
        name="create_postulaciones",
        statements=(
            """
            create table if not exists postulaciones (
              id bigserial primary key,
              full_name text not null,
              email text not null,
              phone text not null,
              rut text,
              birthdate text,
              region text,
              city text,
              occupation text,
              experience_level text not null,
              specialties text,
              motivation text not null,
              contribution text not null,
              availability text,
              has_competition_experience boolean not null default false,
              competition_details text,
              instagram text,
              other_networks text,
              references_info text,
              status text not null default 'pendiente'
                check (status in ('pendiente', 'en_revision', 'aprobada', 'rechazada')),
              approvals_required integer not null default 2 check (approvals_required > 0),
              approvals_count integer not null default 0 check (approvals_count >= 0),
              rejection_reason text,
              approved_at timestamptz,
              rejected_at timestamptz,
              socio_id bigint references usuarios (id),
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now()
            )
            """,
            "create index if not exists idx_postulaciones_status on postulaciones (status)",
            "create index if not exists idx_postulaciones_email on postulaciones (lower(email))",
            "create index if not exists idx_postulaciones_created_at on postulaciones (created_at desc)",
        ),
    ),
    Migration(
        version=3,
        name="add_postulaciones_applicant_history",
        statements=(
            "alter table postulaciones add column if not exists photo_url text",
            "alter table postulaciones add column if not exists address text",
            "alter table postulaciones add column if not exists sponsor_1 text",
            "alter table postulaciones add column if not exists sponsor_2 text",
            "alter table postulaciones add column if not exists previous_aca_member boolean not null default false",
            "alter table postulaciones add column if not exists previous_association text",
            "alter table postulaciones add column if not exists still_in_association boolean not null default false",
            "alter table postulaciones add column if not exists exit_reason text",
        ),
    ),
    Migration(
        version=4,
        name="create_postulacion_aprobaciones",
        statements=(
            """
            create table if not exists postulacion_aprobaciones (
              id bigserial primary key,
              postulacion_id bigint not null references postulaciones (id) on delete cascade,
              approver_id bigint not null references usuarios (id),
              approver_role text not null,
              comment text,
              created_at timestamptz not null default now(),
              constraint uq_postulacion_aprobaciones_approver unique (postulacion_id, approver_id)
            )
            """,
        ),
    ),
    Migration(
        version=5,
        name="create_postulacion_reviewers",
        statements=(
            """
            create table if not exists postulacion_reviewers (
              id bigserial primary key,
              postulacion_id bigint not null references postulaciones (id) on delete cascade,
              reviewer_id bigint not null references usuarios (id),
              assigned_by bigint not null references usuarios (id),
              feedback text,
              created_at timestamptz not null default now(),
              updated_at timestamptz not null default now(),
              constraint uq_postulacion_reviewers_reviewer unique (postulacion_id, reviewer_id)
            )
            """,
            "create index if not exists idx_postulacion_reviewers_postulacion on postulacion_reviewers (postulacion_id)",
        ),
    ),
    Migration(
        version=6,
        name="postulaciones_updated_at_trigger",
        statements=(
            """
            create or replace function touch_postulaciones_updated_at() returns trigger as $$
            begin
              new.updated_at := now();
              return new;
            end;
            $$ language plpgsql
            """,
            "drop trigger if exists trg_postulaciones_updated_at on postulaciones",
            """
            create trigger trg_postulaciones_updated_at
            before update on postulaciones
            for each row execute function touch_postulaciones_updated_at()
            """,
        ),
    ),
)


def pending_migrations(applied_versions: set[int]) -> list[Migration]:
    ordered = sorted(MIGRATIONS, key=lambda item: item.version)
    return [migration for migration in ordered if migration.version not in applied_versions]


def render_migration_sql(migrations: tuple[Migration, ...] = MIGRATIONS) -> str:
    chunks: list[str] = [_dedent_sql(SCHEMA_MIGRATIONS_TABLE) + ";"]
    for migration in sorted(migrations, key=lambda item: item.version):
        chunks.append(f"-- {migration.version:04d} {migration.name}")
        for statement in migration.statements:
            chunks.append(_dedent_sql(statement) + ";")
        chunks.append(
            "insert into schema_migrations (version, name) "
            f"values ({migration.version}, '{migration.name}') on conflict (version) do nothing;"
        )
    return "\n".join(chunks) + "\n"


async def apply_migrations(conn: asyncpg.Connection) -> list[int]:
    """Apply every unrecorded migration and return the versions applied now."""
    applied_now: list[int] = []
    async with conn.transaction():
        await conn.execute("select pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
        await conn.execute(SCHEMA_MIGRATIONS_TABLE)
        rows = await conn.fetch("select version from schema_migrations")
        applied_versions = {int(row["version"]) for row in rows}

        for migration in pending_migrations(applied_versions):
            for statement in migration.statements:
                await conn.execute(statement)
            await conn.execute(
                "insert into schema_migrations (version, name) values ($1, $2)",
                migration.version,
                migration.name,
            )
            applied_now.append(migration.version)
            logger.info("applied schema migration version=%s name=%s", migration.version, migration.name)

    return applied_now


def _dedent_sql(statement: str) -> str:
    lines = statement.strip("\n").splitlines()
    indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
    margin = min(indents) if indents else 0
    return "\n".join(line[margin:] for line in lines).strip()
