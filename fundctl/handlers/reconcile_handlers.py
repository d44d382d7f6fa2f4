from __future__ import annotations

from pathlib import Path
from typing import Optional

from config import CURRENCY_SYMBOL
from ingest.consumption import extract_many
from jobs.reconcile_sweep import ClientReport, run_reconciliation
from ledger.diagnosis import diagnose as run_diagnosis
from ledger.errors import ClientNotFoundError, FundingError, StoreUnavailableError
from ledger.store import FundingStore
from ledger.utilization import UtilizationSummary


def _money(cents: int) -> str:
    return f"{CURRENCY_SYMBOL}{cents / 100:,.2f}"


def _print_utilization(summary: UtilizationSummary, *, verbose: bool) -> None:
    print("  Utilization:")
    print(
        f"    Quantity: {summary.used_quantity}/{summary.total_quantity} ({summary.quantity_percent:.2f}%)"
    )
    print(
        f"    Cost: {_money(summary.used_cost_cents)}/{_money(summary.total_cost_cents)} ({summary.cost_percent:.2f}%)"
    )
    if not verbose:
        return
    print("  " + "-" * 78)
    print(f"  {'ID':<5} | {'Code':<10} | {'Description':<25} | {'Used/Total':<13} | Utilization")
    print("  " + "-" * 78)
    for row in summary.items:
        used_total = f"{row.used_quantity}/{row.total_quantity}"
        print(
            f"  {row.item_id:<5} | {row.item_code[:10]:<10} | {row.description[:25]:<25} | {used_total:<13} | {row.percent:.2f}%"
        )
    print("  " + "-" * 78)


def _print_report(report: ClientReport, *, apply_fixes: bool, verbose: bool) -> None:
    print(f"\n[client] {report.client.name} (ID: {report.client.id})")
    if report.error:
        print(f"  [error] {report.error}")
        return
    if report.plan is None:
        print(f"  [skip] {report.skipped_reason}")
        return
    print(f"  [plan] Active plan {report.plan.id} ({report.plan.start_date} .. {report.plan.end_date})")
    if report.result is None:
        print(f"  [skip] {report.skipped_reason}")
        return

    extraction = report.extraction
    print(
        f"  [data] {len(report.items)} funded items, {report.notes_seen} completed session notes, "
        f"{len(extraction.events) if extraction else 0} consumption events"
    )
    if extraction and extraction.rejected:
        print(f"  [warn] {len(extraction.rejected)} consumption record(s) rejected (no item code or unparseable)")
    result = report.result
    if result.unmatched:
        codes = sorted({e.normalized_item_code for e in result.unmatched})
        print(f"  [warn] {len(result.unmatched)} event(s) match no funded item: {', '.join(codes)}")
    if result.ineligible:
        print(f"  [info] {result.ineligible} event(s) from incomplete sessions excluded")
    for c in result.collisions:
        print(f"  [warn] Code {c.normalized_code!r} shared by items {c.kept_item_id} and {c.ignored_item_id}")
    for o in result.over_allocations:
        label = "used" if o.source == "persisted" else "expected"
        print(
            f"  [review] Item {o.item_id} ({o.normalized_code}) {label} {o.quantity} exceeds allotment {o.total_quantity}"
        )

    if not result.discrepancies:
        print("  [ok] All funded items have correct usage values")
    else:
        print(f"  [drift] {len(result.discrepancies)} funded item(s) with usage discrepancies:")
        for d in result.discrepancies:
            print(
                f"    Item {d.item_id} ({d.normalized_code}): Expected {d.expected_used}, "
                f"Actual {d.actual_used}, Diff {d.delta:+}"
            )
    if apply_fixes and report.applied is not None:
        print(f"  [fix] Fixed {report.applied.applied} funded item(s)")
        for f in report.applied.failed:
            print(f"  [error] Item {f.item_id} not updated: {f.reason}")
    elif apply_fixes and report.skipped_reason:
        print(f"  [skip] Corrections not applied: {report.skipped_reason}")

    if report.utilization is not None:
        _print_utilization(report.utilization, verbose=verbose)


def reconcile(
    db_path: Optional[Path],
    *,
    client_id: Optional[int] = None,
    apply_fixes: bool = False,
    verbose: bool = False,
) -> int:
    mode = "apply" if apply_fixes else "dry-run"
    print(f"[reconcile] Funded item usage reconciliation ({mode})…")
    try:
        sweep = run_reconciliation(db_path, client_id=client_id, apply_fixes=apply_fixes)
    except StoreUnavailableError as e:
        print(f"[error] Cannot reach store: {e.message}")
        return 1
    except ClientNotFoundError as e:
        print(f"[error] {e.message}")
        return 2

    for report in sweep.reports:
        _print_report(report, apply_fixes=apply_fixes, verbose=verbose)

    print("\n[summary]")
    print(f"  Clients processed: {sweep.clients_processed}")
    print(f"  Clients with active plans: {sweep.clients_with_active_plans}")
    print(f"  Discrepancies found: {sweep.discrepancies_found}")
    print(f"  Rejected records: {sweep.rejected_records}")
    print(f"  Unmatched events: {sweep.unmatched_events}")
    print(f"  Over-allocations: {sweep.over_allocations}")
    if apply_fixes:
        print(f"  Items fixed: {sweep.items_fixed}")
        if sweep.items_failed:
            print(f"  Items failed: {sweep.items_failed}")
    elif sweep.discrepancies_found:
        print("  Run with --apply to correct all discrepancies")
    if sweep.client_errors:
        print(f"  Client errors: {sweep.client_errors}")

    return 1 if sweep.status == "failed" else 0


def diagnose(db_path: Optional[Path], client_id: int) -> int:
    try:
        with FundingStore.open(db_path) as store:
            client = store.get_client(client_id)
            plan = store.get_active_plan(client.id)
            items = store.list_funded_items(plan.id)
            notes = store.list_session_notes(client.id)
    except StoreUnavailableError as e:
        print(f"[error] Cannot reach store: {e.message}")
        return 1
    except FundingError as e:
        print(f"[error] {e.message}")
        return 2

    extraction = extract_many(notes)
    report = run_diagnosis(items, extraction)
    print(f"[diagnose] {client.name} (ID: {client.id}), plan {plan.id}")
    print(f"  Funded items: {len(items)}; completed session notes: {len(notes)}")
    print(f"  Catalog codes: {', '.join(report.catalog_codes) or '(none)'}")
    for rej in report.unparseable:
        print(f"  [error] Session note {rej.source_record_id} has an unparseable products payload")
    for rej in report.missing_code:
        print(f"  [error] Session note {rej.source_record_id} has a product with no item code: {rej.record!r}")
    for code, note_ids in sorted(report.unknown_codes.items()):
        print(f"  [warn] Code {code!r} matches no funded item (notes: {', '.join(map(str, note_ids))})")
    for c in report.collisions:
        print(f"  [warn] Code {c.normalized_code!r} shared by items {c.kept_item_id} and {c.ignored_item_id}")
    if not report.any_usage_recorded:
        print("  [warn] None of the funded items show any usage")
    if not report.has_issues:
        print("  [ok] All product codes in session notes match funded items")
    return 0
