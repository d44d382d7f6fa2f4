from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ingest.consumption import ExtractionResult, extract_many
from ledger.errors import FundingError, StoreUnavailableError
from ledger.models import Client, FundedItem, FundingPlan
from ledger.reconciler import ApplyResult, ReconciliationResult, apply, reconcile
from ledger.store import FundingStore
from ledger.utilization import UtilizationSummary, summarize_utilization


logger = logging.getLogger("uvicorn.error")


@dataclass
class ClientReport:
    client: Client
    plan: Optional[FundingPlan] = None
    items: List[FundedItem] = field(default_factory=list)
    notes_seen: int = 0
    extraction: Optional[ExtractionResult] = None
    result: Optional[ReconciliationResult] = None
    applied: Optional[ApplyResult] = None
    utilization: Optional[UtilizationSummary] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SweepResult:
    apply_fixes: bool
    clients_processed: int = 0
    clients_with_active_plans: int = 0
    discrepancies_found: int = 0
    items_fixed: int = 0
    items_failed: int = 0
    rejected_records: int = 0
    unmatched_events: int = 0
    over_allocations: int = 0
    client_errors: int = 0
    reports: List[ClientReport] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.reports and self.client_errors == len(self.reports):
            return "failed"
        if self.client_errors or self.items_failed:
            return "partial"
        return "success"

    def counts(self) -> dict:
        return {
            "clients_processed": self.clients_processed,
            "clients_with_active_plans": self.clients_with_active_plans,
            "discrepancies_found": self.discrepancies_found,
            "items_fixed": self.items_fixed,
            "items_failed": self.items_failed,
            "rejected_records": self.rejected_records,
            "unmatched_events": self.unmatched_events,
            "over_allocations": self.over_allocations,
            "client_errors": self.client_errors,
        }


def _lock_owner() -> str:
    return f"pid:{os.getpid()}"


def reconcile_client(store: FundingStore, client: Client, *, apply_fixes: bool = False) -> ClientReport:
    """Run extract -> reconcile -> (apply) for one client.

    FundingError subclasses other than StoreUnavailableError are recorded on
    the report; connectivity errors propagate and abort the sweep.
    """
    report = ClientReport(client=client)
    try:
        plan = store.find_active_plan(client.id)
    except StoreUnavailableError:
        raise
    except FundingError as e:
        logger.error(f"[reconcile] Client {client.id}: {e.message}")
        report.error = e.message
        return report

    if plan is None:
        report.skipped_reason = "no active plan"
        return report
    report.plan = plan

    report.items = store.list_funded_items(plan.id)
    if not report.items:
        report.skipped_reason = "no funded items"
        return report

    notes = store.list_session_notes(client.id)
    report.notes_seen = len(notes)
    report.extraction = extract_many(notes)
    report.result = reconcile(plan, report.items, report.extraction.events)

    if apply_fixes and report.result.discrepancies:
        owner = _lock_owner()
        if not store.try_lock_plan(plan.id, owner):
            logger.warning(f"[reconcile] Plan {plan.id} is locked by another run; corrections skipped")
            report.skipped_reason = "plan locked"
        else:
            try:
                report.applied = apply(report.result.discrepancies, store)
            finally:
                store.unlock_plan(plan.id, owner)
            report.items = store.list_funded_items(plan.id)

    report.utilization = summarize_utilization(report.items)
    return report


def _tally(sweep: SweepResult, report: ClientReport) -> None:
    sweep.reports.append(report)
    sweep.clients_processed += 1
    if report.error:
        sweep.client_errors += 1
        return
    if report.plan is not None:
        sweep.clients_with_active_plans += 1
    if report.extraction is not None:
        sweep.rejected_records += len(report.extraction.rejected)
    if report.result is not None:
        sweep.discrepancies_found += len(report.result.discrepancies)
        sweep.unmatched_events += len(report.result.unmatched)
        sweep.over_allocations += len(report.result.over_allocations)
    if report.applied is not None:
        sweep.items_fixed += report.applied.applied
        sweep.items_failed += len(report.applied.failed)


def _close_audit(
    store: FundingStore,
    audit_id: int,
    sweep: SweepResult,
    *,
    status: str,
    error: Optional[str] = None,
) -> None:
    notes = sweep.counts()
    if error:
        notes["error"] = error
    try:
        store.finish_audit(
            audit_id,
            status=status,
            clients_processed=sweep.clients_processed,
            discrepancies_found=sweep.discrepancies_found,
            items_fixed=sweep.items_fixed,
            items_failed=sweep.items_failed,
            notes=json.dumps(notes, separators=(",", ":")),
        )
    except sqlite3.Error as e:
        if error is None:
            raise
        # The store that aborted the run may refuse the audit write as well
        logger.error(f"[reconcile] Could not close audit row {audit_id}: {e}")


def run_reconciliation(
    db_path: Optional[Path] = None,
    *,
    client_id: Optional[int] = None,
    apply_fixes: bool = False,
) -> SweepResult:
    """Reconcile funded item usage for one client or every client.

    Raises StoreUnavailableError when the store cannot be reached and
    ClientNotFoundError when a requested client does not exist.
    """
    sweep = SweepResult(apply_fixes=apply_fixes)
    with FundingStore.open(db_path) as store:
        clients = [store.get_client(client_id)] if client_id is not None else store.list_clients()
        mode = "apply" if apply_fixes else "dry-run"
        audit_id = store.start_audit(
            mode=mode,
            client_id=client_id,
            notes=json.dumps({"clients": len(clients)}),
        )
        logger.info(f"[reconcile] Starting {mode} over {len(clients)} client(s)")

        try:
            for client in clients:
                _tally(sweep, reconcile_client(store, client, apply_fixes=apply_fixes))
        except Exception as e:
            logger.error(f"[reconcile] Run aborted after {sweep.clients_processed} client(s): {e}")
            _close_audit(store, audit_id, sweep, status="failed", error=str(e))
            raise
        _close_audit(store, audit_id, sweep, status=sweep.status)

    logger.info(
        f"[reconcile] Done: {sweep.clients_processed} client(s), "
        f"{sweep.discrepancies_found} discrepancies, {sweep.items_fixed} fixed"
    )
    return sweep
