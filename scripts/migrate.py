#!/usr/bin/env python3
"""Apply the relational schema to a PostgreSQL database.

Usage:
    DATABASE_URL=postgresql://localhost:5432/tenantauth python scripts/migrate.py

    # Or with command line args:
    python scripts/migrate.py --database-url postgresql://localhost:5432/tenantauth

The schema file is idempotent, so running it twice is safe.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

import psycopg

ROOT = Path(__file__).resolve().parent.parent
SCHEMA_PATH = ROOT / "sql" / "schema.sql"


def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH, dry_run: bool = False) -> None:
    sql = schema_path.read_text(encoding="utf-8")
    if dry_run:
        print(f"[DRY RUN] Would apply {schema_path} ({len(sql.splitlines())} lines)")
        return
    with psycopg.connect(database_url, autocommit=False) as conn:
        conn.execute(sql)
        conn.commit()
    print(f"Applied {schema_path.name}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply the tenantauth database schema")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL)",
    )
    parser.add_argument("--schema", type=Path, default=SCHEMA_PATH, help="Schema file to apply")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be applied")
    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL is required", file=sys.stderr)
        return 1
    try:
        apply_schema(args.database_url, args.schema, dry_run=args.dry_run)
    except psycopg.Error as exc:
        print(f"Error: migration failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
