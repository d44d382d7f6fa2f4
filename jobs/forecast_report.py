from __future__ import annotations

import os
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Optional

from config import DEFAULT_FORECAST_TICK, DEFAULT_MISS_RATE, DEFAULT_SESSION_CADENCE_DAYS
from forecast.summary import summarize_forecast
from forecast.utilization import FundUtilizationModel, Tick
from ledger.store import FundingStore
from ledger.utilization import summarize_utilization


def _tz_name() -> str:
    return os.getenv("SCHED_TZ") or os.getenv("TZ") or "UTC"


def today_tz() -> date:
    try:
        from zoneinfo import ZoneInfo

        tz = ZoneInfo(_tz_name())
        return datetime.now(tz).date()
    except Exception:
        return datetime.utcnow().date()


def build_client_forecast(
    store: FundingStore,
    client_id: int,
    *,
    as_of: Optional[date] = None,
    cadence_days: int = DEFAULT_SESSION_CADENCE_DAYS,
    miss_rate: float = DEFAULT_MISS_RATE,
    tick: Tick = DEFAULT_FORECAST_TICK,
) -> Dict[str, Any]:
    """Timeline and depletion summary for a client's active plan.

    Spend to date is the reconciled usage (used_quantity x unit price) of
    the plan's funded items. The billed-session count comes from completed
    sessions up to as_of; with none recorded the miss-rate model is used.
    A plan with no recorded total falls back to the catalog's total cost.
    """
    client = store.get_client(client_id)
    plan = store.get_active_plan(client.id)
    items = store.list_funded_items(plan.id)
    utilization = summarize_utilization(items)

    as_of = as_of or today_tz()
    if plan.total_funds_cents <= 0 and utilization.total_cost_cents > 0:
        plan = replace(plan, total_funds_cents=utilization.total_cost_cents)

    window_as_of = min(max(as_of, plan.start_date), plan.end_date)
    billed = store.count_completed_sessions(client.id, plan.start_date, window_as_of)

    model = FundUtilizationModel(
        plan,
        as_of,
        cadence_days,
        actual_spent_cents=utilization.used_cost_cents,
        sessions_billed=billed if billed > 0 else None,
        miss_rate=miss_rate,
    )
    points = model.points(tick)
    return {
        "client": {"id": client.id, "name": client.name},
        "plan": {
            "id": plan.id,
            "start_date": plan.start_date.isoformat(),
            "end_date": plan.end_date.isoformat(),
            "total_funds_cents": plan.total_funds_cents,
        },
        "cadence_days": cadence_days,
        "miss_rate": miss_rate,
        "sessions_billed": model.sessions_billed,
        "points": [p.to_dict() for p in points],
        "summary": summarize_forecast(model).to_dict(),
    }
