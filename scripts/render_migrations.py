#!/usr/bin/env python3
"""Print the postulaciones schema migrations as a single SQL script."""

from __future__ import annotations

import argparse

from postulaciones.services.migrations import MIGRATIONS, render_migration_sql


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit the forward-only schema migrations as SQL.")
    parser.add_argument(
        "--from-version",
        type=int,
        default=0,
        help="Only emit migrations newer than this version",
    )
    args = parser.parse_args()

    selected = tuple(migration for migration in MIGRATIONS if migration.version > args.from_version)
    print(render_migration_sql(selected), end="")


if __name__ == "__main__":
    main()
