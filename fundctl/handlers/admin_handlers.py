from __future__ import annotations

from pathlib import Path

from db.migrate import run_migrations


def db_migrate(db_path: Path) -> int:
    applied = run_migrations(db_path)
    if applied:
        print("Applied migrations:", ", ".join(applied))
    else:
        print("No pending migrations.")
    return 0


def db_reset(db_path: Path, *, force: bool = False) -> int:
    """Destructively reset the DB file and re-create the schema.

    - If the DB file exists, it is deleted. Requires `force=True` to proceed.
    - Runs migrations to re-create schema.
    """
    if db_path.exists():
        if not force:
            print(f"[abort] DB exists at {db_path}. Re-run with --force to delete and reset.")
            return 3
        try:
            db_path.unlink()
            print(f"[reset] Deleted existing DB: {db_path}")
        except OSError as e:
            print(f"[error] Failed deleting DB {db_path}: {e}")
            return 1

    applied = run_migrations(db_path)
    print(
        "[reset] Schema initialized. "
        + (f"Applied: {', '.join(applied)}" if applied else "No pending migrations.")
    )
    return 0
