from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

from db.migrate import run_migrations


def seed_funding_db(path: Path) -> Path:
    """Migrated DB with two clients.

    Client 1 ("Avery") has an active plan with two funded items and three
    session notes: one completed with two products, one completed but
    double-encoded, one from a cancelled session. Client 2 ("Blake") has
    no active plan.
    """
    run_migrations(path)
    conn = sqlite3.connect(path)
    try:
        cur = conn.cursor()
        cur.executemany(
            "INSERT INTO clients(id, name) VALUES (?, ?)",
            [(1, "Avery"), (2, "Blake")],
        )
        cur.execute(
            """
            INSERT INTO funding_plans(id, client_id, start_date, end_date, total_funds_cents, is_active)
            VALUES (10, 1, '2025-01-01', '2026-01-01', 1000000, 1)
            """
        )
        cur.execute(
            """
            INSERT INTO funding_plans(id, client_id, start_date, end_date, total_funds_cents, is_active)
            VALUES (20, 2, '2024-01-01', '2024-12-31', 500000, 0)
            """
        )
        cur.executemany(
            """
            INSERT INTO funded_items(id, plan_id, item_code, description, unit_price_cents, total_quantity, used_quantity)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (100, 10, "ST-01", "Speech therapy session", 19300, 10, 2),
                (101, 10, "ot-02", "Occupational therapy", 15000, 5, 0),
            ],
        )
        cur.executemany(
            "INSERT INTO sessions(id, client_id, session_date, status) VALUES (?, ?, ?, ?)",
            [
                (1000, 1, "2025-02-01", "completed"),
                (1001, 1, "2025-02-15", "Completed"),
                (1002, 1, "2025-03-01", "cancelled"),
            ],
        )
        cur.executemany(
            "INSERT INTO session_notes(id, session_id, client_id, status, products) VALUES (?, ?, ?, ?, ?)",
            [
                (5000, 1000, 1, "completed", json.dumps([{"itemCode": "st-01", "quantity": 2}, {"code": "OT-02"}])),
                (5001, 1001, 1, "completed", json.dumps(json.dumps({"productCode": " St-01 ", "quantity": "1"}))),
                (5002, 1002, 1, "completed", json.dumps([{"itemCode": "st-01", "quantity": 4}])),
            ],
        )
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture()
def funding_db(tmp_path: Path) -> Path:
    return seed_funding_db(tmp_path / "funding_test.db")


def read_used(path: Path) -> dict[int, int]:
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT id, used_quantity FROM funded_items ORDER BY id").fetchall()
        return {int(r[0]): r[1] for r in rows}
    finally:
        conn.close()
