from __future__ import annotations

import sqlite3
from datetime import date

import pytest

from ingest.consumption import extract, extract_many
from ledger.models import ConsumptionEvent, Discrepancy, FundedItem, FundingPlan
from ledger.reconciler import ApplyFailure, apply, reconcile
from ledger.store import FundingStore

from conftest import read_used


PLAN = FundingPlan(id=10, client_id=1, start_date=date(2025, 1, 1), end_date=date(2026, 1, 1), total_funds_cents=1000000)


def _item(item_id: int, code: str, total: int = 10, used=0, plan_id: int = 10) -> FundedItem:
    return FundedItem(
        id=item_id,
        plan_id=plan_id,
        item_code=code,
        description=code,
        unit_price_cents=1000,
        total_quantity=total,
        used_quantity=used,
    )


class _MemoryWriter:
    def __init__(self, used, fail_ids=(), stale_ids=()):
        self.used = dict(used)
        self.fail_ids = set(fail_ids)
        self.stale_ids = set(stale_ids)

    def update_used_quantity(self, item_id, expected_old, new):
        if item_id in self.fail_ids:
            raise sqlite3.OperationalError("database is locked")
        if item_id in self.stale_ids or self.used[item_id] != expected_old:
            return False
        self.used[item_id] = new
        return True


def test_incomplete_session_events_are_excluded_and_drift_corrected():
    items = [_item(1, "st-01", total=10, used=2)]
    events = [
        ConsumptionEvent("st-01", 3),
        ConsumptionEvent("st-01", 1, session_status="cancelled"),
    ]
    result = reconcile(PLAN, items, events)
    assert result.expected_by_item == {1: 3}
    assert result.ineligible == 1
    assert len(result.discrepancies) == 1
    d = result.discrepancies[0]
    assert (d.expected_used, d.actual_used, d.delta) == (3, 2, 1)

    writer = _MemoryWriter({1: 2})
    applied = apply(result.discrepancies, writer)
    assert applied.applied == 1
    assert applied.failed == []
    assert writer.used[1] == 3


def test_items_without_events_expect_zero():
    items = [_item(1, "a", used=4), _item(2, "b", used=0)]
    result = reconcile(PLAN, items, [])
    assert result.expected_by_item == {1: 0, 2: 0}
    assert [(d.item_id, d.delta) for d in result.discrepancies] == [(1, -4)]


def test_unmatched_events_are_reported():
    items = [_item(1, "a")]
    result = reconcile(PLAN, items, [ConsumptionEvent("zz-99", 2), ConsumptionEvent("a", 1)])
    assert [e.normalized_item_code for e in result.unmatched] == ["zz-99"]
    assert result.expected_by_item[1] == 1


def test_code_collision_keeps_first_item():
    items = [_item(1, "ST-01"), _item(2, " st-01 ")]
    result = reconcile(PLAN, items, [ConsumptionEvent("st-01", 2)])
    assert result.expected_by_item == {1: 2, 2: 0}
    assert len(result.collisions) == 1
    assert result.collisions[0].kept_item_id == 1
    assert result.collisions[0].ignored_item_id == 2


def test_over_allocation_reported_not_capped():
    items = [_item(1, "a", total=2, used=0), _item(2, "b", total=1, used=5)]
    events = [ConsumptionEvent("a", 3), ConsumptionEvent("b", 5)]
    result = reconcile(PLAN, items, events)
    assert result.expected_by_item == {1: 3, 2: 5}
    by_item = {o.item_id: o.source for o in result.over_allocations}
    assert by_item == {1: "expected", 2: "persisted"}


def test_items_from_other_plans_are_ignored():
    items = [_item(1, "a"), _item(2, "b", plan_id=99)]
    result = reconcile(PLAN, items, [ConsumptionEvent("b", 1)])
    assert 2 not in result.expected_by_item
    assert len(result.unmatched) == 1


def test_apply_continues_after_write_failure():
    discrepancies = [
        Discrepancy(1, "a", expected_used=3, actual_used=1),
        Discrepancy(2, "b", expected_used=4, actual_used=0),
        Discrepancy(3, "c", expected_used=1, actual_used=2),
    ]
    writer = _MemoryWriter({1: 1, 2: 0, 3: 2}, fail_ids={2}, stale_ids={3})
    result = apply(discrepancies, writer)
    assert result.applied == 1
    assert writer.used[1] == 3
    assert {f.item_id: f.reason for f in result.failed} == {2: "database is locked", 3: "stale"}
    assert result.partial


def test_apply_skips_zero_delta():
    writer = _MemoryWriter({1: 2})
    result = apply([Discrepancy(1, "a", expected_used=2, actual_used=2)], writer)
    assert result.applied == 0
    assert result.failed == []


def test_second_pass_is_a_no_op_against_store(funding_db):
    with FundingStore.open(funding_db) as store:
        plan = store.get_active_plan(1)
        items = store.list_funded_items(plan.id)
        events = extract_many(store.list_session_notes(1)).events
        first = reconcile(plan, items, events)
        assert {d.item_id: d.delta for d in first.discrepancies} == {100: 1, 101: 1}
        applied = apply(first.discrepancies, store)
        assert applied.applied == 2

        second = reconcile(plan, store.list_funded_items(plan.id), events)
        assert second.discrepancies == []
        assert apply(second.discrepancies, store).applied == 0

    assert read_used(funding_db) == {100: 3, 101: 1}


class _FlakyWriter(_MemoryWriter):
    def update_used_quantity(self, item_id, expected_old, new):
        if item_id == 1:
            raise ConnectionError("backend reset")
        return super().update_used_quantity(item_id, expected_old, new)


def test_apply_survives_non_database_errors():
    discrepancies = [
        Discrepancy(1, "a", expected_used=3, actual_used=1),
        Discrepancy(2, "b", expected_used=4, actual_used=0),
        Discrepancy(3, "c", expected_used=1, actual_used=2),
    ]
    writer = _FlakyWriter({1: 1, 2: 0, 3: 2})
    result = apply(discrepancies, writer)
    assert result.applied == 2
    assert result.failed == [ApplyFailure(1, "backend reset")]
    assert writer.used == {1: 1, 2: 4, 3: 1}


def test_draft_note_on_completed_session_is_excluded():
    draft = ConsumptionEvent("st-01", 2, session_status="completed", note_status="draft")
    assert not draft.is_eligible
    result = reconcile(PLAN, [_item(1, "st-01")], [draft, ConsumptionEvent("st-01", 1)])
    assert result.ineligible == 1
    assert result.expected_by_item == {1: 1}


@pytest.mark.parametrize("variant", ["ST-01", " st-01 ", "St-01"])
def test_code_variants_reconcile_to_one_item(variant):
    events = extract([{"itemCode": variant, "quantity": 2}]).events
    result = reconcile(PLAN, [_item(1, "st-01"), _item(2, "ot-02")], events)
    assert result.expected_by_item == {1: 2, 2: 0}
    assert result.unmatched == []


def test_fractional_quantity_is_persisted_as_whole_units(funding_db):
    with FundingStore.open(funding_db) as store:
        plan = store.get_active_plan(1)
        items = store.list_funded_items(plan.id)
        events = extract([{"code": "ot-02", "quantity": 1.5}]).events
        result = reconcile(plan, items, events)
        assert result.expected_by_item[101] == 2
        assert apply(result.discrepancies, store).failed == []

    used = read_used(funding_db)
    assert used[101] == 2
    assert isinstance(used[101], int)
