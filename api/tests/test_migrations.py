from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from postulaciones.services.migrations import (
    MIGRATION_LOCK_KEY,
    MIGRATIONS,
    apply_migrations,
    pending_migrations,
    render_migration_sql,
)


class FakeMigrationConnection:
    def __init__(self, applied: set[int]) -> None:
        self.applied = set(applied)
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.in_transaction = False

    @asynccontextmanager
    async def transaction(self):
        self.in_transaction = True
        try:
            yield
        finally:
            self.in_transaction = False

    async def execute(self, query: str, *args: Any) -> str:
        assert self.in_transaction
        self.executed.append((" ".join(query.split()), args))
        if query.startswith("insert into schema_migrations"):
            self.applied.add(args[0])
        return "OK"

    async def fetch(self, query: str, *args: Any) -> list[dict[str, int]]:
        assert self.in_transaction
        return [{"version": version} for version in sorted(self.applied)]


def test_migration_versions_are_unique_and_ascending() -> None:
    versions = [migration.version for migration in MIGRATIONS]

    assert versions == sorted(versions)
    assert len(versions) == len(set(versions))
    assert versions[0] == 1


def test_pending_migrations_skips_recorded_versions() -> None:
    pending = pending_migrations({1, 2, 4})

    assert [migration.version for migration in pending] == [3, 5, 6]
    assert pending_migrations({migration.version for migration in MIGRATIONS}) == []


def test_render_migration_sql_records_each_version() -> None:
    sql = render_migration_sql()

    assert sql.startswith("create table if not exists schema_migrations (")
    for migration in MIGRATIONS:
        assert f"-- {migration.version:04d} {migration.name}" in sql
        assert f"values ({migration.version}, '{migration.name}') on conflict (version) do nothing;" in sql
    assert sql.index("create table if not exists usuarios") < sql.index("create table if not exists postulaciones")


def test_apply_migrations_takes_lock_and_applies_only_pending() -> None:
    conn = FakeMigrationConnection(applied={1, 2, 3})

    applied = asyncio.run(apply_migrations(conn))

    assert applied == [4, 5, 6]
    assert conn.executed[0] == ("select pg_advisory_xact_lock($1)", (MIGRATION_LOCK_KEY,))
    assert conn.executed[1][0].startswith("create table if not exists schema_migrations")
    statements = [query for query, _ in conn.executed]
    assert not any("create table if not exists usuarios" in query for query in statements)
    assert any("create table if not exists postulacion_aprobaciones" in query for query in statements)
    assert conn.applied == {1, 2, 3, 4, 5, 6}


def test_apply_migrations_is_a_no_op_when_current() -> None:
    conn = FakeMigrationConnection(applied={migration.version for migration in MIGRATIONS})

    assert asyncio.run(apply_migrations(conn)) == []
    assert len(conn.executed) == 2
