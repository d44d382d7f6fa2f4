from __future__ import annotations

import math
from calendar import monthrange
from datetime import date, timedelta
from typing import List, Literal, Optional

from config import DEFAULT_FORECAST_TICK, DEFAULT_MISS_RATE, DEFAULT_SESSION_CADENCE_DAYS
from ledger.models import ForecastPoint, FundingPlan


Tick = Literal["cadence", "monthly"]


def _add_months(d: date, months: int) -> date:
    # Simple month add that clamps to last day of month when needed
    month = d.month - 1 + months
    year = d.year + month // 12
    month = month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(d.day, last_day)
    return date(year, month, day)


def _label(d: date) -> str:
    return f"{d:%b} {d.day}"


class FundUtilizationModel:
    """Four cumulative spend curves over a funding plan, stepped at a session cadence.

    - ideal: the plan's funds spread evenly over every cadence boundary
    - actual: spend to date, populated up to as_of only
    - extension: the observed per-session spend carried forward from as_of
    - correction: the per-session spend that exhausts the remaining funds by end

    Extension and correction equal actual at as_of. An as_of outside the
    plan window is clamped to it. When no time remains, correction is
    the full plan amount.
    """

    def __init__(
        self,
        plan: FundingPlan,
        as_of: date,
        session_cadence_days: int = DEFAULT_SESSION_CADENCE_DAYS,
        *,
        actual_spent_cents: Optional[int] = None,
        sessions_billed: Optional[int] = None,
        miss_rate: float = DEFAULT_MISS_RATE,
    ):
        if session_cadence_days <= 0:
            raise ValueError("session_cadence_days must be positive")
        if not 0.0 <= miss_rate <= 1.0:
            raise ValueError("miss_rate must be between 0 and 1")
        if plan.end_date < plan.start_date:
            raise ValueError("plan end_date is before start_date")

        self.start = plan.start_date
        self.end = plan.end_date
        self.total_cents = max(int(plan.total_funds_cents), 0)
        self.cadence = int(session_cadence_days)
        self.as_of = min(max(as_of, self.start), self.end)
        self.duration_days = (self.end - self.start).days

        if self.duration_days > 0:
            self.ideal_session_cents = self.total_cents / (self.duration_days / self.cadence)
        else:
            self.ideal_session_cents = float(self.total_cents)

        slots_now = self._slots(self.as_of)
        if sessions_billed is not None:
            billed_now = max(int(sessions_billed), 0)
            self.attendance = billed_now / slots_now if slots_now > 0 else 1.0
        else:
            self.attendance = 1.0 - miss_rate
            billed_now = self._billed(self.as_of)
        self.sessions_billed = billed_now

        if actual_spent_cents is None:
            # No reconciled spend supplied: price billed sessions at the ideal rate
            self.actual_spent_cents = int(round(billed_now * self.ideal_session_cents))
        else:
            self.actual_spent_cents = max(int(actual_spent_cents), 0)

        self.session_cost_cents = self.actual_spent_cents / billed_now if billed_now > 0 else 0.0

        self.remaining_days = (self.end - self.as_of).days
        if self.remaining_days > 0:
            remaining_funds = max(self.total_cents - self.actual_spent_cents, 0)
            self.required_session_cents: Optional[float] = remaining_funds / (self.remaining_days / self.cadence)
        else:
            self.required_session_cents = None

    # Helpers

    def _in_window(self, d: date) -> bool:
        return self.start <= d <= self.end

    def _slots(self, d: date) -> int:
        """Cadence boundaries passed between plan start and d."""
        return max((d - self.start).days, 0) // self.cadence

    def _billed(self, d: date) -> int:
        return int(math.floor(self._slots(d) * self.attendance + 1e-9))

    def _steps_since_as_of(self, d: date) -> int:
        return (d - self.as_of).days // self.cadence

    # Series

    def ideal_at(self, d: date) -> Optional[int]:
        if not self._in_window(d):
            return None
        if d == self.end or self.duration_days <= 0:
            return self.total_cents
        return min(int(round(self.ideal_session_cents * self._slots(d))), self.total_cents)

    def actual_at(self, d: date) -> Optional[int]:
        if not self._in_window(d) or d > self.as_of:
            return None
        if d == self.as_of:
            return self.actual_spent_cents
        return min(int(round(self.session_cost_cents * self._billed(d))), self.actual_spent_cents)

    def extension_at(self, d: date) -> Optional[int]:
        if not self._in_window(d) or d < self.as_of:
            return None
        return self.actual_spent_cents + int(round(self.session_cost_cents * self._steps_since_as_of(d)))

    def correction_at(self, d: date) -> Optional[int]:
        if not self._in_window(d) or d < self.as_of:
            return None
        if self.required_session_cents is None:
            return self.total_cents
        if d == self.end:
            return max(self.total_cents, self.actual_spent_cents)
        step = int(round(self.required_session_cents * self._steps_since_as_of(d)))
        return min(self.actual_spent_cents + step, max(self.total_cents, self.actual_spent_cents))

    # Timeline

    def tick_dates(self, tick: Tick = DEFAULT_FORECAST_TICK) -> List[date]:
        dates = {self.start, self.end, self.as_of}
        if tick == "monthly":
            k = 1
            d = _add_months(self.start, k)
            while d < self.end:
                dates.add(d)
                k += 1
                d = _add_months(self.start, k)
        elif tick == "cadence":
            d = self.start + timedelta(days=self.cadence)
            while d < self.end:
                dates.add(d)
                d = d + timedelta(days=self.cadence)
        else:
            raise ValueError(f"Unknown tick {tick!r}; use 'cadence' or 'monthly'")
        return sorted(dates)

    def point_at(self, d: date) -> ForecastPoint:
        return ForecastPoint(
            date=d,
            label=_label(d),
            ideal_cents=self.ideal_at(d) or 0,
            actual_cents=self.actual_at(d),
            extension_cents=self.extension_at(d),
            correction_cents=self.correction_at(d),
        )

    def points(self, tick: Tick = DEFAULT_FORECAST_TICK) -> List[ForecastPoint]:
        return [self.point_at(d) for d in self.tick_dates(tick)]


def forecast(
    plan: FundingPlan,
    as_of: date,
    session_cadence_days: int = DEFAULT_SESSION_CADENCE_DAYS,
    *,
    actual_spent_cents: Optional[int] = None,
    sessions_billed: Optional[int] = None,
    miss_rate: float = DEFAULT_MISS_RATE,
    tick: Tick = DEFAULT_FORECAST_TICK,
) -> List[ForecastPoint]:
    """Project the ideal/actual/extension/correction timeline for a plan.

    Returns one point per tick (cadence boundary or month step) plus the
    plan start, plan end and as_of dates, ordered by date.
    """
    model = FundUtilizationModel(
        plan,
        as_of,
        session_cadence_days,
        actual_spent_cents=actual_spent_cents,
        sessions_billed=sessions_billed,
        miss_rate=miss_rate,
    )
    return model.points(tick)
