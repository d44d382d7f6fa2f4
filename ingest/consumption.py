from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from ledger.models import ConsumptionEvent, Quantity, RejectedRecord, SessionNote, normalize_code


logger = logging.getLogger("uvicorn.error")


@dataclass
class ExtractionResult:
    events: List[ConsumptionEvent] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)
    parse_errors: int = 0

    def merge(self, other: "ExtractionResult") -> None:
        self.events.extend(other.events)
        self.rejected.extend(other.rejected)
        self.parse_errors += other.parse_errors

    @property
    def total(self) -> int:
        return len(self.events) + len(self.rejected)


class PayloadParseError(ValueError):
    pass


def _field(name: str) -> Callable[[Mapping[str, Any]], Any]:
    def accessor(record: Mapping[str, Any]) -> Any:
        return record.get(name)

    accessor.__name__ = f"get_{name}"
    return accessor


# Tried in order; the first accessor yielding a non-empty code wins.
CODE_ACCESSORS: Sequence[Callable[[Mapping[str, Any]], Any]] = (
    _field("itemCode"),
    _field("productCode"),
    _field("code"),
)


def resolve_item_code(record: Mapping[str, Any]) -> Optional[str]:
    """Return the normalized item code of a record, or None when no alias resolves."""
    for accessor in CODE_ACCESSORS:
        code = normalize_code(accessor(record))
        if code:
            return code
    return None


def resolve_quantity(value: Any) -> Quantity:
    """Coerce a raw quantity to whole units.

    Anything that is not a positive finite number becomes 1; a partially
    consumed unit counts as a whole one.
    """
    if isinstance(value, bool) or value is None:
        return 1
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        s = str(value).strip()
        if not s:
            return 1
        try:
            num = float(s)
        except ValueError:
            return 1
    if not math.isfinite(num) or num <= 0:
        return 1
    return int(math.ceil(num))


def decode_payload(raw: Any) -> List[Any]:
    """Normalize string | object | collection | nested collection into a flat list of records.

    Raises PayloadParseError when a serialized payload cannot be decoded.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as e:
            raise PayloadParseError(str(e)) from e
        if isinstance(decoded, str):
            # Double-encoded payloads are decoded once more, never further
            try:
                decoded = json.loads(decoded)
            except json.JSONDecodeError as e:
                raise PayloadParseError(str(e)) from e
        raw = decoded
    if isinstance(raw, Mapping):
        return [raw]
    if isinstance(raw, (list, tuple)):
        records = list(raw)
        if len(records) == 1 and isinstance(records[0], (list, tuple)):
            records = list(records[0])
        return records
    return [raw]


def extract(
    raw: Any,
    source_record_id: Optional[int] = None,
    *,
    session_date=None,
    session_status: Optional[str] = "completed",
    note_status: Optional[str] = "completed",
) -> ExtractionResult:
    """Turn one raw consumption record into canonical events.

    Records without a resolvable item code are returned as rejected entries
    so the caller can count and report them; a payload that fails to parse
    yields no events and a single parse_error rejection.
    """
    result = ExtractionResult()
    try:
        records = decode_payload(raw)
    except PayloadParseError as e:
        logger.error(f"[extract] Unparseable consumption record {source_record_id!r}: {e}")
        result.parse_errors += 1
        result.rejected.append(RejectedRecord(source_record_id, raw, "parse_error"))
        return result

    for rec in records:
        if not isinstance(rec, Mapping):
            result.rejected.append(RejectedRecord(source_record_id, rec, "not_an_object"))
            continue
        code = resolve_item_code(rec)
        if code is None:
            result.rejected.append(RejectedRecord(source_record_id, rec, "missing_code"))
            continue
        result.events.append(
            ConsumptionEvent(
                normalized_item_code=code,
                quantity=resolve_quantity(rec.get("quantity")),
                source_record_id=source_record_id,
                session_date=session_date,
                session_status=session_status,
                note_status=note_status,
            )
        )
    return result


def extract_note(note: SessionNote) -> ExtractionResult:
    return extract(
        note.products,
        note.id,
        session_date=note.session_date,
        session_status=note.session_status,
        note_status=note.note_status,
    )


def extract_many(notes: Iterable[SessionNote]) -> ExtractionResult:
    combined = ExtractionResult()
    for note in notes:
        combined.merge(extract_note(note))
    return combined
