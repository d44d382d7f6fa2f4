from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Optional

from config import CURRENCY_SYMBOL
from jobs.forecast_report import build_client_forecast
from ledger.errors import FundingError, StoreUnavailableError
from ledger.store import FundingStore


def _fmt(cents: Optional[int]) -> str:
    if cents is None:
        return "—"
    return f"{CURRENCY_SYMBOL}{cents / 100:,.2f}"


def forecast(
    db_path: Optional[Path],
    client_id: int,
    *,
    as_of: Optional[date] = None,
    cadence_days: int,
    miss_rate: float,
    tick: str,
    as_json: bool = False,
) -> int:
    try:
        with FundingStore.open(db_path) as store:
            payload = build_client_forecast(
                store,
                client_id,
                as_of=as_of,
                cadence_days=cadence_days,
                miss_rate=miss_rate,
                tick=tick,  # type: ignore[arg-type]
            )
    except StoreUnavailableError as e:
        print(f"[error] Cannot reach store: {e.message}")
        return 1
    except FundingError as e:
        print(f"[error] {e.message}")
        return 2
    except ValueError as e:
        print(f"[error] Invalid forecast parameters: {e}")
        return 2

    if as_json:
        print(json.dumps(payload, indent=2))
        return 0

    summary = payload["summary"]
    plan = payload["plan"]
    print(
        f"[forecast] {payload['client']['name']} plan {plan['id']} "
        f"({plan['start_date']} .. {plan['end_date']}), as of {summary['as_of']}"
    )
    print(f"{'Date':<12} {'Ideal':>14} {'Actual':>14} {'Extension':>14} {'Correction':>14}")
    for p in payload["points"]:
        print(
            f"{p['date']:<12} {_fmt(p['ideal_cents']):>14} {_fmt(p['actual_cents']):>14} "
            f"{_fmt(p['extension_cents']):>14} {_fmt(p['correction_cents']):>14}"
        )
    print(
        f"[summary] Spent {_fmt(summary['spent_cents'])} of {_fmt(summary['total_funds_cents'])} "
        f"({summary['percent_funds_spent']}% funds, {summary['percent_time_elapsed']}% time) -> {summary['status']}"
    )
    depletion = summary["projected_depletion_date"] or "after plan end"
    print(f"[summary] Projected depletion: {depletion}; remaining at end: {_fmt(summary['projected_remaining_at_end_cents'])}")
    return 0
