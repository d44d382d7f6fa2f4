from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger("uvicorn.error")

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_SCHEMA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    filename TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
)
"""


def _pending(conn: sqlite3.Connection, migrations_dir: Path) -> List[Path]:
    """SQL files in name order that have no schema_migrations row yet."""
    if not migrations_dir.is_dir():
        logger.warning(f"[migrate] No migrations directory at {migrations_dir}")
        return []
    done = {r[0] for r in conn.execute("SELECT filename FROM schema_migrations")}
    return [p for p in sorted(migrations_dir.glob("*.sql")) if p.name not in done]


def run_migrations(db_path: Path, migrations_dir: Optional[Path] = None) -> List[str]:
    """Bring the funding schema up to date.

    A file is recorded in schema_migrations only once its script has run,
    so a failing file leaves earlier ones applied and itself pending.
    Returns the filenames applied by this call.
    """
    migrations_dir = migrations_dir or MIGRATIONS_DIR
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute(_SCHEMA_TABLE_SQL)
        applied: List[str] = []
        for sql_file in _pending(conn, migrations_dir):
            stamp = datetime.utcnow().isoformat(timespec="seconds") + "Z"
            try:
                with conn:
                    conn.executescript(sql_file.read_text(encoding="utf-8"))
                    conn.execute(
                        "INSERT INTO schema_migrations(filename, applied_at) VALUES(?, ?)",
                        (sql_file.name, stamp),
                    )
            except sqlite3.Error as e:
                logger.error(f"[migrate] {sql_file.name} failed on {db_path}: {e}")
                raise
            logger.info(f"[migrate] Applied {sql_file.name} to {db_path}")
            applied.append(sql_file.name)
        return applied
    finally:
        conn.close()
