#!/usr/bin/env python
"""Apply SimFlow SQL migrations to the database.

Usage:
    python scripts/migrate.py
    python scripts/migrate.py --database-url postgresql://...
    python scripts/migrate.py --dry-run
"""

import argparse
import re
import sys
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from simflow.config import get_settings

MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


def get_migration_files(migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    """Get all migration files in order."""
    if not migrations_dir.exists():
        print(f"ERROR: Migrations directory not found: {migrations_dir}")
        sys.exit(1)
    return sorted(migrations_dir.glob("*.sql"), key=parse_migration_number)


def parse_migration_number(filepath: Path) -> int:
    """Extract migration number from filename (001_initial.sql -> 1)."""
    match = re.match(r"(\d+)", filepath.name)
    return int(match.group(1)) if match else 0


def get_applied_migrations(engine: Engine) -> set[int]:
    """Get set of applied migration numbers."""
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS simflow_migration_history (
                migration_number INT PRIMARY KEY,
                filename TEXT NOT NULL,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """))
        conn.commit()

        result = conn.execute(text("SELECT migration_number FROM simflow_migration_history"))
        return {row[0] for row in result}


def apply_migration(engine: Engine, filepath: Path, migration_num: int, dry_run: bool) -> bool:
    """Apply a single migration file inside one transaction."""
    print(f"  Applying: {filepath.name}")

    sql_content = filepath.read_text(encoding="utf-8")

    if dry_run:
        print(f"    [DRY RUN] Would execute {len(sql_content)} characters")
        return True

    try:
        with engine.begin() as conn:
            conn.exec_driver_sql(sql_content)
            conn.execute(
                text("""
                    INSERT INTO simflow_migration_history (migration_number, filename)
                    VALUES (:num, :name)
                    ON CONFLICT (migration_number) DO NOTHING
                """),
                {"num": migration_num, "name": filepath.name},
            )
    except SQLAlchemyError as e:
        print(f"    FAILED: {e}")
        return False

    print("    OK")
    return True


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply SimFlow migrations")
    parser.add_argument(
        "--database-url",
        default=get_settings().database_url_sync,
        help="Synchronous (psycopg2) database URL",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be applied without executing",
    )

    args = parser.parse_args()

    print("SimFlow Migration Runner")
    print("=" * 50)
    print(f"Database: {args.database_url.split('@')[-1]}")
    print()

    migration_files = get_migration_files()
    print(f"Found {len(migration_files)} migration files")

    engine = create_engine(args.database_url)

    try:
        applied = get_applied_migrations(engine)
    except SQLAlchemyError as e:
        print(f"ERROR: Could not connect to database: {e}")
        return 1
    print(f"Already applied: {len(applied)}")
    print()

    pending = [
        (parse_migration_number(f), f)
        for f in migration_files
        if parse_migration_number(f) not in applied
    ]
    if not pending:
        print("No pending migrations.")
        return 0

    print(f"Pending migrations: {len(pending)}")
    print()

    success_count = 0
    fail_count = 0
    for migration_num, filepath in pending:
        if apply_migration(engine, filepath, migration_num, args.dry_run):
            success_count += 1
        else:
            fail_count += 1
            print("\nStopping due to failure.")
            break

    print()
    print("=" * 50)
    print(f"Applied: {success_count}, Failed: {fail_count}")

    return 0 if fail_count == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
