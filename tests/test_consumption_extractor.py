from __future__ import annotations

import json
from datetime import date

import pytest

from ingest.consumption import (
    PayloadParseError,
    decode_payload,
    extract,
    extract_many,
    resolve_item_code,
    resolve_quantity,
)
from ledger.models import SessionNote


def test_alias_priority_first_non_empty_wins():
    assert resolve_item_code({"itemCode": "A-1", "productCode": "B-2", "code": "C-3"}) == "a-1"
    assert resolve_item_code({"productCode": "B-2", "code": "C-3"}) == "b-2"
    assert resolve_item_code({"code": "  C-3  "}) == "c-3"
    # Empty or whitespace-only values fall through to the next alias
    assert resolve_item_code({"itemCode": "  ", "productCode": None, "code": "x"}) == "x"
    assert resolve_item_code({"name": "no code here"}) is None


def test_quantity_defaults_to_one_for_missing_or_invalid():
    assert resolve_quantity(None) == 1
    assert resolve_quantity("") == 1
    assert resolve_quantity("abc") == 1
    assert resolve_quantity(0) == 1
    assert resolve_quantity(-2) == 1
    assert resolve_quantity(True) == 1
    assert resolve_quantity(float("nan")) == 1
    assert resolve_quantity("3") == 3
    assert resolve_quantity(2.0) == 2
    assert isinstance(resolve_quantity(2.0), int)
    assert resolve_quantity(1.5) == 2
    assert resolve_quantity("0.25") == 1
    assert isinstance(resolve_quantity("2.5"), int)


@pytest.mark.parametrize(
    "raw, expected_len",
    [
        (None, 0),
        ("", 0),
        ({"code": "a"}, 1),
        ([{"code": "a"}, {"code": "b"}], 2),
        ([[{"code": "a"}, {"code": "b"}]], 2),
        (json.dumps([{"code": "a"}]), 1),
        (json.dumps(json.dumps({"code": "a"})), 1),
        (b'{"code": "a"}', 1),
    ],
)
def test_decode_payload_shapes(raw, expected_len):
    assert len(decode_payload(raw)) == expected_len


def test_decode_payload_unwraps_single_nesting_only():
    records = decode_payload([[[{"code": "a"}]]])
    assert records == [[{"code": "a"}]]


def test_decode_payload_rejects_malformed_string():
    with pytest.raises(PayloadParseError):
        decode_payload("[{'code': 'not json'")


def test_extract_counts_every_record_as_event_or_rejection():
    raw = [
        {"itemCode": "ST-01", "quantity": 2},
        {"productCode": "ot-02"},
        {"description": "no code"},
        "just a string",
    ]
    result = extract(raw, source_record_id=7)
    assert result.total == len(raw)
    assert [e.normalized_item_code for e in result.events] == ["st-01", "ot-02"]
    assert [e.quantity for e in result.events] == [2, 1]
    assert all(e.source_record_id == 7 for e in result.events)
    assert sorted(r.reason for r in result.rejected) == ["missing_code", "not_an_object"]
    assert result.parse_errors == 0


def test_extract_parse_error_is_counted_not_raised():
    result = extract("{broken", source_record_id=9)
    assert result.events == []
    assert result.parse_errors == 1
    assert len(result.rejected) == 1
    assert result.rejected[0].reason == "parse_error"
    assert result.rejected[0].source_record_id == 9


def test_extract_many_carries_session_context():
    notes = [
        SessionNote(1, 11, 1, date(2025, 2, 1), "completed", "completed", json.dumps([{"code": "A"}])),
        SessionNote(2, 12, 1, date(2025, 2, 8), "cancelled", "completed", [{"code": "A", "quantity": 4}]),
        SessionNote(3, 13, 1, date(2025, 2, 15), "completed", "completed", "not json"),
    ]
    result = extract_many(notes)
    assert len(result.events) == 2
    assert result.events[0].is_eligible
    assert not result.events[1].is_eligible
    assert result.events[1].session_date == date(2025, 2, 8)
    assert result.parse_errors == 1
