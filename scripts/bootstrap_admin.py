#!/usr/bin/env python3
"""Emit deterministic SQL that grants a director role to a usuarios row."""

from __future__ import annotations

import argparse

DIRECTOR_ROLE_CHOICES = ["admin", "organizer", "editor"]


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: int | None, email: str | None) -> str:
    role_value = _quote_sql(role)

    if user_id is not None:
        target_where = f"id = {int(user_id)}"
    else:
        assert email is not None
        target_where = f"lower(email) = {_quote_sql(email.strip().lower())}"

    return f"""-- Director role bootstrap SQL
-- Run this in a privileged Postgres session against the postulaciones database.

update usuarios
set role = {role_value}, activo = true, updated_at = now()
where {target_where};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to grant a director role to a usuario.")
    parser.add_argument(
        "--role",
        choices=DIRECTOR_ROLE_CHOICES,
        default="admin",
        help="Director role stored in usuarios.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", type=int, help="usuarios.id")
    identity_group.add_argument("--email", help="usuarios.email (matched case-insensitively)")
    args = parser.parse_args()

    print(render_sql(role=args.role, user_id=args.user_id, email=args.email))


if __name__ == "__main__":
    main()
