from __future__ import annotations

import sqlite3

import pytest

import jobs.reconcile_sweep as sweep_mod
from jobs.reconcile_sweep import run_reconciliation
from ledger.errors import ClientNotFoundError, StoreUnavailableError
from ledger.store import FundingStore

from conftest import read_used


def _audit_rows(path):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute("SELECT * FROM reconcile_audit ORDER BY id").fetchall()
    finally:
        conn.close()


def test_dry_run_reports_without_writing(funding_db):
    sweep = run_reconciliation(funding_db)
    assert sweep.clients_processed == 2
    assert sweep.clients_with_active_plans == 1
    assert sweep.discrepancies_found == 2
    assert sweep.items_fixed == 0
    assert sweep.status == "success"
    assert read_used(funding_db) == {100: 2, 101: 0}

    skipped = [r for r in sweep.reports if r.client.id == 2][0]
    assert skipped.skipped_reason == "no active plan"

    audit = _audit_rows(funding_db)
    assert len(audit) == 1
    assert audit[0]["mode"] == "dry-run"
    assert audit[0]["status"] == "success"
    assert audit[0]["discrepancies_found"] == 2


def test_apply_is_idempotent(funding_db):
    first = run_reconciliation(funding_db, apply_fixes=True)
    assert first.items_fixed == 2
    assert read_used(funding_db) == {100: 3, 101: 1}
    report = [r for r in first.reports if r.client.id == 1][0]
    assert report.utilization.used_quantity == 4
    assert report.utilization.used_cost_cents == 3 * 19300 + 15000

    second = run_reconciliation(funding_db, apply_fixes=True)
    assert second.discrepancies_found == 0
    assert second.items_fixed == 0
    assert read_used(funding_db) == {100: 3, 101: 1}


def test_locked_plan_skips_corrections(funding_db):
    with FundingStore.open(funding_db) as store:
        store.try_lock_plan(10, "other-run")
    sweep = run_reconciliation(funding_db, client_id=1, apply_fixes=True)
    assert sweep.discrepancies_found == 2
    assert sweep.items_fixed == 0
    assert sweep.reports[0].skipped_reason == "plan locked"
    assert read_used(funding_db) == {100: 2, 101: 0}


def test_client_error_does_not_stop_sweep(funding_db):
    conn = sqlite3.connect(funding_db)
    conn.execute(
        "INSERT INTO funding_plans(id, client_id, start_date, end_date, total_funds_cents, is_active) "
        "VALUES (21, 2, '2025-01-01', '2025-12-31', 1000, 1)"
    )
    conn.execute(
        "INSERT INTO funding_plans(id, client_id, start_date, end_date, total_funds_cents, is_active) "
        "VALUES (22, 2, '2025-03-01', '2025-12-31', 1000, 1)"
    )
    conn.commit()
    conn.close()

    sweep = run_reconciliation(funding_db)
    assert sweep.client_errors == 1
    assert sweep.discrepancies_found == 2
    assert sweep.status == "partial"


def test_unknown_client_and_missing_store(funding_db, tmp_path):
    with pytest.raises(ClientNotFoundError):
        run_reconciliation(funding_db, client_id=42)
    with pytest.raises(StoreUnavailableError):
        run_reconciliation(tmp_path / "missing.db")


def test_lock_left_by_dead_run_is_taken_over(funding_db):
    conn = sqlite3.connect(funding_db)
    conn.execute("INSERT INTO plan_locks(plan_id, acquired_at, owner) VALUES (10, '2000-01-01T00:00:00Z', 'pid:99999')")
    conn.commit()
    conn.close()

    sweep = run_reconciliation(funding_db, client_id=1, apply_fixes=True)
    assert sweep.items_fixed == 2
    assert sweep.reports[0].skipped_reason is None
    assert read_used(funding_db) == {100: 3, 101: 1}

    conn = sqlite3.connect(funding_db)
    try:
        assert conn.execute("SELECT COUNT(*) FROM plan_locks").fetchone()[0] == 0
    finally:
        conn.close()


def test_aborted_sweep_closes_audit_as_failed(funding_db, monkeypatch):
    real = sweep_mod.reconcile_client

    def fake(store, client, *, apply_fixes=False):
        if client.id == 2:
            raise StoreUnavailableError("Store query failed: disk I/O error")
        return real(store, client, apply_fixes=apply_fixes)

    monkeypatch.setattr(sweep_mod, "reconcile_client", fake)
    with pytest.raises(StoreUnavailableError):
        run_reconciliation(funding_db)

    audit = _audit_rows(funding_db)
    assert len(audit) == 1
    assert audit[0]["status"] == "failed"
    assert audit[0]["run_finished_at"] is not None
    assert audit[0]["clients_processed"] == 1
    assert "disk I/O error" in audit[0]["notes"]
