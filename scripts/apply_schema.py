#!/usr/bin/env python3
"""Apply the authentication engine schema to a Postgres database.

Usage:
    # Using environment variables:
    DATABASE_URL=postgresql://localhost:5432/ciamflow python scripts/apply_schema.py

    # Or with command line args:
    python scripts/apply_schema.py --database-url postgresql://localhost:5432/ciamflow

    # Print the statements without executing them:
    python scripts/apply_schema.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def load_schema(path: Path) -> str:
    sql = path.read_text()
    if "CREATE TABLE" not in sql:
        raise ValueError(f"{path} does not look like a schema file")
    return sql


def apply_schema(database_url: str, sql: str) -> list[str]:
    """Execute ``sql`` in one transaction and return the tables now present."""
    import psycopg

    from ciamflow.storage.models import ALL_RECORDS

    with psycopg.connect(database_url) as conn:
        with conn.transaction():
            conn.execute(sql)
        present = []
        for record_type in ALL_RECORDS:
            row = conn.execute(
                "SELECT to_regclass(%s)", (f"public.{record_type.table}",)
            ).fetchone()
            if row and row[0]:
                present.append(record_type.table)
    return present


def main():
    from ciamflow.storage.postgres import SCHEMA_PATH

    parser = argparse.ArgumentParser(
        description="Apply the ciamflow Postgres schema",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="Postgres DSN (or set DATABASE_URL env var)",
    )
    parser.add_argument(
        "--schema",
        default=str(SCHEMA_PATH),
        help="Path to the schema file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the schema without executing it",
    )

    args = parser.parse_args()

    try:
        sql = load_schema(Path(args.schema))
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.dry_run:
        print(f"[DRY RUN] Would apply {args.schema}:\n")
        print(sql)
        return

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    try:
        tables = apply_schema(args.database_url, sql)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Schema applied; {len(tables)} tables present:")
    for table in tables:
        print(f"  {table}")


if __name__ == "__main__":
    main()
