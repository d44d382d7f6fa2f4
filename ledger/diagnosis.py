from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from ingest.consumption import ExtractionResult
from ledger.models import CodeCollision, FundedItem, RejectedRecord
from ledger.reconciler import build_code_lookup


@dataclass
class Diagnosis:
    catalog_codes: List[str] = field(default_factory=list)
    missing_code: List[RejectedRecord] = field(default_factory=list)
    unparseable: List[RejectedRecord] = field(default_factory=list)
    # code -> note ids referencing it
    unknown_codes: Dict[str, List[int]] = field(default_factory=dict)
    collisions: List[CodeCollision] = field(default_factory=list)
    any_usage_recorded: bool = False

    @property
    def has_issues(self) -> bool:
        return bool(self.missing_code or self.unparseable or self.unknown_codes or self.collisions)


def diagnose(items: Sequence[FundedItem], extraction: ExtractionResult) -> Diagnosis:
    """Check consumption item codes against the catalog without touching usage."""
    lookup, collisions = build_code_lookup(items)
    out = Diagnosis(
        catalog_codes=list(lookup.keys()),
        collisions=collisions,
        any_usage_recorded=any(item.used_quantity > 0 for item in items),
    )
    for rej in extraction.rejected:
        if rej.reason == "parse_error":
            out.unparseable.append(rej)
        else:
            out.missing_code.append(rej)
    for event in extraction.events:
        if event.normalized_item_code in lookup:
            continue
        refs = out.unknown_codes.setdefault(event.normalized_item_code, [])
        if event.source_record_id is not None and event.source_record_id not in refs:
            refs.append(event.source_record_id)
    return out
