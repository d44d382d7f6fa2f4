from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Protocol, Sequence

from ledger.models import (
    CodeCollision,
    ConsumptionEvent,
    Discrepancy,
    FundedItem,
    FundingPlan,
    OverAllocation,
    Quantity,
)


logger = logging.getLogger("uvicorn.error")


class UsageWriter(Protocol):
    def update_used_quantity(self, item_id: int, expected_old: Quantity, new: Quantity) -> bool:
        ...


@dataclass
class ReconciliationResult:
    expected_by_item: Dict[int, Quantity]
    discrepancies: List[Discrepancy] = field(default_factory=list)
    unmatched: List[ConsumptionEvent] = field(default_factory=list)
    ineligible: int = 0
    collisions: List[CodeCollision] = field(default_factory=list)
    over_allocations: List[OverAllocation] = field(default_factory=list)


@dataclass
class ApplyFailure:
    item_id: int
    reason: str


@dataclass
class ApplyResult:
    applied: int = 0
    failed: List[ApplyFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed) and self.applied > 0


def build_code_lookup(items: Iterable[FundedItem]) -> tuple[Dict[str, int], List[CodeCollision]]:
    """Map normalized item codes to item ids; the first catalog entry wins on collision."""
    lookup: Dict[str, int] = {}
    collisions: List[CodeCollision] = []
    for item in items:
        code = item.normalized_code
        if not code:
            continue
        if code in lookup:
            collisions.append(CodeCollision(code, kept_item_id=lookup[code], ignored_item_id=item.id))
            logger.warning(
                f"[reconcile] Item code {code!r} shared by items {lookup[code]} and {item.id}; keeping {lookup[code]}"
            )
            continue
        lookup[code] = item.id
    return lookup, collisions


def reconcile(
    plan: FundingPlan,
    items: Sequence[FundedItem],
    events: Iterable[ConsumptionEvent],
) -> ReconciliationResult:
    """Compute expected usage per funded item and the drift from persisted usage.

    - Only events from completed sessions with completed notes count.
    - Every item of the plan gets an expected value, even with no events.
    - Events whose code matches no item are collected as unmatched.
    - Items already above their allotment, or that would be after correction,
      are reported as over-allocations and left for manual review.
    """
    owned: List[FundedItem] = []
    for item in items:
        if item.plan_id != plan.id:
            logger.warning(f"[reconcile] Item {item.id} belongs to plan {item.plan_id}, not {plan.id}; ignored")
            continue
        owned.append(item)

    lookup, collisions = build_code_lookup(owned)
    expected: Dict[int, Quantity] = {item.id: 0 for item in owned}
    result = ReconciliationResult(expected_by_item=expected, collisions=collisions)

    for event in events:
        if not event.is_eligible:
            result.ineligible += 1
            continue
        item_id = lookup.get(event.normalized_item_code)
        if item_id is None:
            result.unmatched.append(event)
            continue
        expected[item_id] += event.quantity

    for item in owned:
        exp = expected[item.id]
        if exp != item.used_quantity:
            result.discrepancies.append(
                Discrepancy(
                    item_id=item.id,
                    normalized_code=item.normalized_code,
                    expected_used=exp,
                    actual_used=item.used_quantity,
                )
            )
        if item.used_quantity > item.total_quantity:
            result.over_allocations.append(
                OverAllocation(item.id, item.normalized_code, item.used_quantity, item.total_quantity, "persisted")
            )
        elif exp > item.total_quantity:
            result.over_allocations.append(
                OverAllocation(item.id, item.normalized_code, exp, item.total_quantity, "expected")
            )

    return result


def apply(discrepancies: Iterable[Discrepancy], store: UsageWriter) -> ApplyResult:
    """Persist used_quantity = expected for each discrepancy, one independent write per item.

    A failed or stale write is recorded and the remaining items are still
    corrected; nothing is rolled back.
    """
    result = ApplyResult()
    for d in discrepancies:
        if d.delta == 0:
            continue
        try:
            ok = store.update_used_quantity(d.item_id, d.actual_used, d.expected_used)
        except Exception as e:
            logger.exception(f"[apply] Failed updating funded item {d.item_id}: {e}")
            result.failed.append(ApplyFailure(d.item_id, str(e)))
            continue
        if not ok:
            logger.warning(f"[apply] Funded item {d.item_id} changed since it was read; not updated")
            result.failed.append(ApplyFailure(d.item_id, "stale"))
            continue
        result.applied += 1
    return result
