from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from config import DEFAULT_FORECAST_TICK, DEFAULT_MISS_RATE, DEFAULT_SESSION_CADENCE_DAYS
from jobs.forecast_report import build_client_forecast
from jobs.reconcile_sweep import ClientReport, run_reconciliation
from ledger.errors import FundingError
from ledger.store import FundingStore
from ledger.utilization import summarize_utilization
from security.deps import require_auth


router = APIRouter()


class ForecastQuery(BaseModel):
    as_of: Optional[date] = None
    cadence_days: int = Field(DEFAULT_SESSION_CADENCE_DAYS, gt=0, le=366)
    miss_rate: float = Field(DEFAULT_MISS_RATE, ge=0.0, le=1.0)
    tick: Literal["cadence", "monthly"] = DEFAULT_FORECAST_TICK


def _http_error(e: FundingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


def _report_dict(report: ClientReport) -> Dict[str, Any]:
    result = report.result
    extraction = report.extraction
    out: Dict[str, Any] = {
        "client": {"id": report.client.id, "name": report.client.name},
        "plan_id": report.plan.id if report.plan else None,
        "skipped_reason": report.skipped_reason,
        "error": report.error,
        "notes_seen": report.notes_seen,
        "events": len(extraction.events) if extraction else 0,
        "rejected": [
            {"source_record_id": r.source_record_id, "reason": r.reason} for r in extraction.rejected
        ]
        if extraction
        else [],
        "discrepancies": [],
        "unmatched_codes": [],
        "ineligible_events": 0,
        "collisions": [],
        "over_allocations": [],
        "applied": None,
        "utilization": report.utilization.to_dict() if report.utilization else None,
    }
    if result is not None:
        out["discrepancies"] = [
            {
                "item_id": d.item_id,
                "code": d.normalized_code,
                "expected_used": d.expected_used,
                "actual_used": d.actual_used,
                "delta": d.delta,
            }
            for d in result.discrepancies
        ]
        out["unmatched_codes"] = sorted({e.normalized_item_code for e in result.unmatched})
        out["ineligible_events"] = result.ineligible
        out["collisions"] = [asdict(c) for c in result.collisions]
        out["over_allocations"] = [asdict(o) for o in result.over_allocations]
    if report.applied is not None:
        out["applied"] = {
            "applied": report.applied.applied,
            "failed": [asdict(f) for f in report.applied.failed],
        }
    return out


def _reconcile(client_id: int, *, apply_fixes: bool) -> Dict[str, Any]:
    try:
        with FundingStore.open() as store:
            store.get_client(client_id)
            store.get_active_plan(client_id)
        sweep = run_reconciliation(client_id=client_id, apply_fixes=apply_fixes)
    except FundingError as e:
        raise _http_error(e)
    report = sweep.reports[0]
    if report.error:
        raise HTTPException(status_code=409, detail={"error": report.error})
    return {"mode": "apply" if apply_fixes else "dry-run", "status": sweep.status, **_report_dict(report)}


@router.get("/api/clients/{client_id}/utilization/forecast")
def get_utilization_forecast(
    client_id: int,
    as_of: Optional[str] = Query(None, description="YYYY-MM-DD; defaults to today"),
    cadence_days: int = Query(DEFAULT_SESSION_CADENCE_DAYS),
    miss_rate: float = Query(DEFAULT_MISS_RATE),
    tick: str = Query(DEFAULT_FORECAST_TICK),
):
    try:
        q = ForecastQuery(as_of=as_of, cadence_days=cadence_days, miss_rate=miss_rate, tick=tick)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        )
    try:
        with FundingStore.open() as store:
            return build_client_forecast(
                store,
                client_id,
                as_of=q.as_of,
                cadence_days=q.cadence_days,
                miss_rate=q.miss_rate,
                tick=q.tick,
            )
    except FundingError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/api/clients/{client_id}/utilization/summary")
def get_utilization_summary(client_id: int):
    try:
        with FundingStore.open() as store:
            client = store.get_client(client_id)
            plan = store.get_active_plan(client.id)
            items = store.list_funded_items(plan.id)
    except FundingError as e:
        raise _http_error(e)
    return {
        "client": {"id": client.id, "name": client.name},
        "plan_id": plan.id,
        **summarize_utilization(items).to_dict(),
    }


@router.get("/api/clients/{client_id}/reconciliation")
def get_reconciliation(client_id: int):
    return _reconcile(client_id, apply_fixes=False)


@router.post("/api/clients/{client_id}/reconciliation/apply", dependencies=[Depends(require_auth)])
def post_reconciliation_apply(client_id: int):
    return _reconcile(client_id, apply_fixes=True)
