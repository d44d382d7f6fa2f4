from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from config import COMPLETED_STATUS


# Units consumed; fractional consumption is rounded up to whole units
Quantity = int


def normalize_code(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def _is_completed(status: Optional[str]) -> bool:
    return normalize_code(status) == COMPLETED_STATUS


@dataclass
class Client:
    id: int
    name: str


@dataclass(frozen=True)
class FundingPlan:
    id: int
    client_id: int
    start_date: date
    end_date: date
    total_funds_cents: int
    is_active: bool = True

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days


@dataclass
class FundedItem:
    id: int
    plan_id: int
    item_code: str
    description: str
    unit_price_cents: int
    total_quantity: int
    used_quantity: Quantity = 0

    @property
    def normalized_code(self) -> str:
        return normalize_code(self.item_code)

    @property
    def is_over_allocated(self) -> bool:
        return self.used_quantity > self.total_quantity


@dataclass(frozen=True)
class SessionNote:
    """A session note joined to its session, carrying the raw products payload."""

    id: int
    session_id: int
    client_id: int
    session_date: Optional[date]
    session_status: Optional[str]
    note_status: Optional[str]
    products: Any

    @property
    def is_completed(self) -> bool:
        return _is_completed(self.session_status) and _is_completed(self.note_status)


@dataclass(frozen=True)
class ConsumptionEvent:
    normalized_item_code: str
    quantity: Quantity
    source_record_id: Optional[int] = None
    session_date: Optional[date] = None
    # Events extracted without session context are treated as completed.
    session_status: Optional[str] = COMPLETED_STATUS
    note_status: Optional[str] = COMPLETED_STATUS

    @property
    def is_eligible(self) -> bool:
        return _is_completed(self.session_status) and _is_completed(self.note_status)


@dataclass(frozen=True)
class RejectedRecord:
    source_record_id: Optional[int]
    record: Any
    reason: str


@dataclass(frozen=True)
class Discrepancy:
    item_id: int
    normalized_code: str
    expected_used: Quantity
    actual_used: Quantity

    @property
    def delta(self) -> Quantity:
        return self.expected_used - self.actual_used


@dataclass(frozen=True)
class OverAllocation:
    item_id: int
    normalized_code: str
    quantity: Quantity
    total_quantity: int
    source: str  # "persisted" or "expected"


@dataclass(frozen=True)
class CodeCollision:
    normalized_code: str
    kept_item_id: int
    ignored_item_id: int


@dataclass(frozen=True)
class ForecastPoint:
    date: date
    label: str
    ideal_cents: int
    actual_cents: Optional[int]
    extension_cents: Optional[int]
    correction_cents: Optional[int]

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "label": self.label,
            "ideal_cents": self.ideal_cents,
            "actual_cents": self.actual_cents,
            "extension_cents": self.extension_cents,
            "correction_cents": self.correction_cents,
        }
