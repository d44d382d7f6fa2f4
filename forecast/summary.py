from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Literal, Optional

from config import DEPLETING_FAST_RATIO, DEPLETING_SLOW_RATIO
from forecast.utilization import FundUtilizationModel


Status = Literal["depleting-fast", "depleting-slow", "balanced"]


@dataclass(frozen=True)
class ForecastSummary:
    as_of: date
    total_funds_cents: int
    spent_cents: int
    remaining_cents: int
    days_elapsed: int
    days_remaining: int
    percent_time_elapsed: float
    percent_funds_spent: float
    utilization_rate: float
    status: Status
    projected_depletion_date: Optional[date]
    projected_remaining_at_end_cents: int
    projected_overspend_cents: Optional[int]
    daily_budget_cents: float
    daily_spend_rate_cents: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "total_funds_cents": self.total_funds_cents,
            "spent_cents": self.spent_cents,
            "remaining_cents": self.remaining_cents,
            "days_elapsed": self.days_elapsed,
            "days_remaining": self.days_remaining,
            "percent_time_elapsed": round(self.percent_time_elapsed, 2),
            "percent_funds_spent": round(self.percent_funds_spent, 2),
            "utilization_rate": round(self.utilization_rate, 3),
            "status": self.status,
            "projected_depletion_date": (
                self.projected_depletion_date.isoformat() if self.projected_depletion_date else None
            ),
            "projected_remaining_at_end_cents": self.projected_remaining_at_end_cents,
            "projected_overspend_cents": self.projected_overspend_cents,
            "daily_budget_cents": round(self.daily_budget_cents, 2),
            "daily_spend_rate_cents": round(self.daily_spend_rate_cents, 2),
        }


def classify(utilization_rate: float) -> Status:
    if utilization_rate > DEPLETING_FAST_RATIO:
        return "depleting-fast"
    if utilization_rate < DEPLETING_SLOW_RATIO:
        return "depleting-slow"
    return "balanced"


def _depletion_date(model: FundUtilizationModel) -> Optional[date]:
    """First cadence step at which the extension line reaches the plan total, if before plan end."""
    total = model.total_cents
    spent = model.actual_spent_cents
    if total <= 0:
        return None
    if spent >= total:
        return model.as_of
    if model.session_cost_cents <= 0:
        return None
    steps = math.ceil((total - spent) / model.session_cost_cents)
    when = model.as_of + timedelta(days=steps * model.cadence)
    return when if when <= model.end else None


def summarize_forecast(model: FundUtilizationModel) -> ForecastSummary:
    """Headline depletion metrics for a fund utilization model."""
    total_days = max(model.duration_days, 1)
    days_elapsed = (model.as_of - model.start).days
    spent = model.actual_spent_cents
    total = model.total_cents

    pct_time = days_elapsed / total_days * 100
    pct_spent = spent / total * 100 if total > 0 else 0.0
    rate = pct_spent / max(0.1, pct_time)

    end_extension = model.extension_at(model.end)
    if end_extension is None:
        end_extension = spent
    overspend = end_extension - total

    return ForecastSummary(
        as_of=model.as_of,
        total_funds_cents=total,
        spent_cents=spent,
        remaining_cents=total - spent,
        days_elapsed=days_elapsed,
        days_remaining=model.remaining_days,
        percent_time_elapsed=pct_time,
        percent_funds_spent=pct_spent,
        utilization_rate=rate,
        status=classify(rate),
        projected_depletion_date=_depletion_date(model),
        projected_remaining_at_end_cents=max(0, total - end_extension),
        projected_overspend_cents=overspend if overspend > 0 else None,
        daily_budget_cents=total / total_days,
        daily_spend_rate_cents=spent / days_elapsed if days_elapsed > 0 else 0.0,
    )
