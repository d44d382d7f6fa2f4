from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List

from ledger.models import FundedItem, Quantity


@dataclass(frozen=True)
class ItemUtilization:
    item_id: int
    item_code: str
    description: str
    used_quantity: Quantity
    total_quantity: int
    percent: float


@dataclass
class UtilizationSummary:
    total_quantity: int = 0
    used_quantity: Quantity = 0
    total_cost_cents: int = 0
    used_cost_cents: int = 0
    items: List[ItemUtilization] = field(default_factory=list)

    @property
    def quantity_percent(self) -> float:
        return (self.used_quantity / self.total_quantity) * 100 if self.total_quantity > 0 else 0.0

    @property
    def cost_percent(self) -> float:
        return (self.used_cost_cents / self.total_cost_cents) * 100 if self.total_cost_cents > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "total_quantity": self.total_quantity,
            "used_quantity": self.used_quantity,
            "quantity_percent": round(self.quantity_percent, 2),
            "total_cost_cents": self.total_cost_cents,
            "used_cost_cents": self.used_cost_cents,
            "cost_percent": round(self.cost_percent, 2),
            "items": [
                {
                    "item_id": i.item_id,
                    "item_code": i.item_code,
                    "description": i.description,
                    "used_quantity": i.used_quantity,
                    "total_quantity": i.total_quantity,
                    "percent": round(i.percent, 2),
                }
                for i in self.items
            ],
        }


def summarize_utilization(items: Iterable[FundedItem]) -> UtilizationSummary:
    """Aggregate quantity and cost utilization over a plan's funded items."""
    summary = UtilizationSummary()
    for item in items:
        summary.total_quantity += item.total_quantity
        summary.used_quantity += item.used_quantity
        summary.total_cost_cents += item.total_quantity * item.unit_price_cents
        summary.used_cost_cents += int(round(item.used_quantity * item.unit_price_cents))
        pct = (item.used_quantity / item.total_quantity) * 100 if item.total_quantity > 0 else 0.0
        summary.items.append(
            ItemUtilization(
                item_id=item.id,
                item_code=item.item_code,
                description=item.description,
                used_quantity=item.used_quantity,
                total_quantity=item.total_quantity,
                percent=pct,
            )
        )
    return summary
