from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Iterable

from calmirror.models import CanonicalOccurrence, MappingRecord


@dataclass
class ReconcilePlan:
    creates: list[CanonicalOccurrence] = field(default_factory=list)
    updates: list[tuple[CanonicalOccurrence, MappingRecord]] = field(default_factory=list)
    stale: list[MappingRecord] = field(default_factory=list)


def partition_active(occurrences: Iterable[CanonicalOccurrence]) -> dict[str, CanonicalOccurrence]:
    """Non-cancelled occurrences keyed by id, in source order."""
    active: dict[str, CanonicalOccurrence] = {}
    for occurrence in occurrences:
        if occurrence.is_cancelled:
            continue
        active[occurrence.id] = occurrence
    return active


def find_stale_source_ids(mapped_source_ids: Iterable[str], active_source_ids: Collection[str]) -> list[str]:
    return [source_id for source_id in mapped_source_ids if source_id not in active_source_ids]


def plan_reconciliation(
    occurrences: Iterable[CanonicalOccurrence],
    mappings: Iterable[MappingRecord],
) -> ReconcilePlan:
    active = partition_active(occurrences)
    by_source_id = {mapping.source_event_id: mapping for mapping in mappings}
    plan = ReconcilePlan()
    for source_id, occurrence in active.items():
        mapping = by_source_id.get(source_id)
        if mapping is None:
            plan.creates.append(occurrence)
        else:
            plan.updates.append((occurrence, mapping))
    for source_id in find_stale_source_ids(by_source_id.keys(), active.keys()):
        plan.stale.append(by_source_id[source_id])
    return plan
