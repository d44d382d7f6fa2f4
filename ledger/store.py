from __future__ import annotations

import logging
import math
import os
import sqlite3
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from config import PLAN_LOCK_TTL_SECONDS
from ledger.errors import (
    ClientNotFoundError,
    MultipleActivePlansError,
    NoActivePlanError,
    StoreUnavailableError,
)
from ledger.models import Client, FundedItem, FundingPlan, Quantity, SessionNote


logger = logging.getLogger("uvicorn.error")


def _default_db_path() -> Path:
    # Allow override via env var to support tests
    env = os.getenv("FUND_DB_PATH")
    if env:
        return Path(env)
    return Path("localdb/funding.db")


def _iso_date(s: object) -> Optional[date]:
    if not s:
        return None
    try:
        return date.fromisoformat(str(s)[:10])
    except ValueError:
        return None


def _quantity(v: object) -> Quantity:
    if v is None:
        return 0
    return int(math.ceil(float(v)))


def connect(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Open the store; a missing or unreadable database is a connectivity failure."""
    dbp = db_path or _default_db_path()
    if not Path(dbp).exists():
        raise StoreUnavailableError(f"Database not found: {dbp}", {"db_path": str(dbp)})
    try:
        conn = sqlite3.connect(dbp)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Cannot open database {dbp}: {e}", {"db_path": str(dbp)}) from e
    return conn


class FundingStore:
    """Read/write contracts against the relational store.

    Reads fail loudly on structural problems (missing tables, locked
    database) by raising StoreUnavailableError. The only write the
    reconciler may issue is `update_used_quantity`.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @classmethod
    def open(cls, db_path: Optional[Path] = None) -> "FundingStore":
        return cls(connect(db_path))

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "FundingStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Store query failed: {e}") from e

    # Clients

    def list_clients(self) -> List[Client]:
        rows = self._query("SELECT id, name FROM clients ORDER BY id")
        return [Client(id=int(r["id"]), name=r["name"]) for r in rows]

    def get_client(self, client_id: int) -> Client:
        rows = self._query("SELECT id, name FROM clients WHERE id = ?", (client_id,))
        if not rows:
            raise ClientNotFoundError(client_id)
        return Client(id=int(rows[0]["id"]), name=rows[0]["name"])

    # Plans

    def find_active_plan(self, client_id: int) -> Optional[FundingPlan]:
        """Return the single active plan for a client, or None.

        More than one active plan is reported as MultipleActivePlansError
        rather than picking one arbitrarily.
        """
        rows = self._query(
            """
            SELECT id, client_id, start_date, end_date, total_funds_cents, is_active
            FROM funding_plans
            WHERE client_id = ? AND is_active = 1
            ORDER BY id
            """,
            (client_id,),
        )
        if not rows:
            return None
        if len(rows) > 1:
            raise MultipleActivePlansError(client_id, [int(r["id"]) for r in rows])
        r = rows[0]
        start = _iso_date(r["start_date"])
        end = _iso_date(r["end_date"])
        if start is None or end is None:
            raise StoreUnavailableError(
                f"Funding plan {r['id']} has invalid dates",
                {"plan_id": int(r["id"]), "start_date": r["start_date"], "end_date": r["end_date"]},
            )
        return FundingPlan(
            id=int(r["id"]),
            client_id=int(r["client_id"]),
            start_date=start,
            end_date=end,
            total_funds_cents=int(r["total_funds_cents"] or 0),
            is_active=bool(r["is_active"]),
        )

    def get_active_plan(self, client_id: int) -> FundingPlan:
        plan = self.find_active_plan(client_id)
        if plan is None:
            raise NoActivePlanError(client_id)
        return plan

    # Catalog

    def list_funded_items(self, plan_id: int) -> List[FundedItem]:
        rows = self._query(
            """
            SELECT id, plan_id, item_code, description, unit_price_cents, total_quantity, used_quantity
            FROM funded_items
            WHERE plan_id = ?
            ORDER BY id
            """,
            (plan_id,),
        )
        return [
            FundedItem(
                id=int(r["id"]),
                plan_id=int(r["plan_id"]),
                item_code=r["item_code"] or "",
                description=r["description"] or "",
                unit_price_cents=int(r["unit_price_cents"] or 0),
                total_quantity=int(r["total_quantity"] or 0),
                used_quantity=_quantity(r["used_quantity"]),
            )
            for r in rows
        ]

    # Consumption

    def list_session_notes(self, client_id: int, *, completed_only: bool = True) -> List[SessionNote]:
        """Session notes with products, joined to their sessions.

        With completed_only both the note and the session must be completed.
        """
        sql = """
            SELECT n.id, n.session_id, n.client_id, n.status AS note_status, n.products,
                   s.status AS session_status, s.session_date
            FROM session_notes n
            JOIN sessions s ON n.session_id = s.id
            WHERE n.client_id = ?
              AND n.products IS NOT NULL
        """
        if completed_only:
            sql += " AND LOWER(TRIM(n.status)) = 'completed' AND LOWER(TRIM(s.status)) = 'completed'"
        sql += " ORDER BY s.session_date, n.id"
        rows = self._query(sql, (client_id,))
        return [
            SessionNote(
                id=int(r["id"]),
                session_id=int(r["session_id"]),
                client_id=int(r["client_id"]),
                session_date=_iso_date(r["session_date"]),
                session_status=r["session_status"],
                note_status=r["note_status"],
                products=r["products"],
            )
            for r in rows
        ]

    def count_completed_sessions(self, client_id: int, start: date, as_of: date) -> int:
        rows = self._query(
            """
            SELECT COUNT(DISTINCT s.id) AS n
            FROM sessions s
            JOIN session_notes n ON n.session_id = s.id
            WHERE s.client_id = ?
              AND LOWER(TRIM(s.status)) = 'completed'
              AND LOWER(TRIM(n.status)) = 'completed'
              AND DATE(s.session_date) >= ? AND DATE(s.session_date) <= ?
            """,
            (client_id, start.isoformat(), as_of.isoformat()),
        )
        return int(rows[0]["n"]) if rows else 0

    # Writes

    def update_used_quantity(self, item_id: int, expected_old: Quantity, new: Quantity) -> bool:
        """Conditionally set used_quantity; False when the row changed underneath us."""
        with self.conn:
            cur = self.conn.execute(
                "UPDATE funded_items SET used_quantity = ? WHERE id = ? AND used_quantity = ?",
                (new, item_id, expected_old),
            )
        return cur.rowcount == 1

    # Advisory locks and audit

    def try_lock_plan(self, plan_id: int, owner: str, *, ttl_seconds: int = PLAN_LOCK_TTL_SECONDS) -> bool:
        """Take the advisory lock for a plan.

        A lock older than ttl_seconds belongs to a run that died without
        releasing it and is taken over.
        """
        now = datetime.utcnow()
        acquired_at = now.isoformat(timespec="seconds") + "Z"
        stale_before = (now - timedelta(seconds=ttl_seconds)).isoformat(timespec="seconds") + "Z"
        try:
            with self.conn:
                cur = self.conn.execute(
                    "DELETE FROM plan_locks WHERE plan_id = ? AND acquired_at < ?",
                    (plan_id, stale_before),
                )
                if cur.rowcount:
                    logger.warning(f"[lock] Took over stale lock on plan {plan_id}")
                self.conn.execute(
                    "INSERT INTO plan_locks(plan_id, acquired_at, owner) VALUES (?, ?, ?)",
                    (plan_id, acquired_at, owner),
                )
            return True
        except sqlite3.IntegrityError:
            # Held by another run
            return False

    def unlock_plan(self, plan_id: int, owner: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM plan_locks WHERE plan_id = ? AND owner = ?", (plan_id, owner))

    def start_audit(self, *, mode: str, client_id: Optional[int], notes: str) -> int:
        started_at = datetime.utcnow().isoformat(timespec="seconds") + "Z"
        with self.conn:
            cur = self.conn.execute(
                "INSERT INTO reconcile_audit(run_started_at, mode, client_id, status, notes) VALUES (?, ?, ?, ?, ?)",
                (started_at, mode, client_id, "running", notes),
            )
        return int(cur.lastrowid)

    def finish_audit(
        self,
        audit_id: int,
        *,
        status: str,
        clients_processed: int,
        discrepancies_found: int,
        items_fixed: int,
        items_failed: int,
        notes: str,
    ) -> None:
        finished_at = datetime.utcnow().isoformat(timespec="seconds") + "Z"
        with self.conn:
            self.conn.execute(
                """
                UPDATE reconcile_audit
                SET run_finished_at = ?, status = ?, clients_processed = ?, discrepancies_found = ?,
                    items_fixed = ?, items_failed = ?, notes = ?
                WHERE id = ?
                """,
                (
                    finished_at,
                    status,
                    clients_processed,
                    discrepancies_found,
                    items_fixed,
                    items_failed,
                    notes,
                    audit_id,
                ),
            )
