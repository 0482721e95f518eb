"""Change detection between the baseline snapshot and the live upstream entities.

Pure functions. Comparison is on the JSON form of each collection, so object
identity never matters, mapping key order never matters, and list order does.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from storygen.backbone.models import EntityKind, ProjectBackbone, UpstreamSnapshot

WATCHED_COLLECTIONS = tuple(kind.collection for kind in EntityKind)


def _as_snapshot(entities: UpstreamSnapshot | ProjectBackbone) -> UpstreamSnapshot:
    if isinstance(entities, ProjectBackbone):
        return entities.upstream()
    return entities


def _dump(entities: UpstreamSnapshot, collection: str) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in getattr(entities, collection)]


def detect_changes(
    baseline: UpstreamSnapshot | None,
    current: UpstreamSnapshot | ProjectBackbone,
) -> bool:
    """True as soon as any field of any watched entity differs from the baseline.

    Without a baseline nothing has been generated yet, so nothing is stale.
    """
    if baseline is None:
        return False
    current = _as_snapshot(current)
    for collection in WATCHED_COLLECTIONS:
        if _dump(baseline, collection) != _dump(current, collection):
            return True
    return False


@dataclass
class CollectionDiff:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: dict[str, list[str]] = field(default_factory=dict)
    reordered: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified or self.reordered)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "modified": {k: list(v) for k, v in self.modified.items()},
            "reordered": self.reordered,
        }


def _changed_fields(before: dict[str, Any], after: dict[str, Any]) -> list[str]:
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def diff_collection(before: list[dict[str, Any]], after: list[dict[str, Any]]) -> CollectionDiff:
    before_by_id = {e.get("id"): e for e in before}
    after_by_id = {e.get("id"): e for e in after}

    diff = CollectionDiff(
        added=[e.get("id") for e in after if e.get("id") not in before_by_id],
        removed=[e.get("id") for e in before if e.get("id") not in after_by_id],
    )
    for entity_id, old in before_by_id.items():
        new = after_by_id.get(entity_id)
        if new is not None and new != old:
            diff.modified[entity_id] = _changed_fields(old, new)

    kept_before = [e.get("id") for e in before if e.get("id") in after_by_id]
    kept_after = [e.get("id") for e in after if e.get("id") in before_by_id]
    diff.reordered = kept_before != kept_after
    return diff


def diff_upstream(
    baseline: UpstreamSnapshot | None,
    current: UpstreamSnapshot | ProjectBackbone,
) -> dict[str, CollectionDiff]:
    """Per-collection summary of what changed since the baseline."""
    current = _as_snapshot(current)
    baseline = baseline or UpstreamSnapshot()
    return {
        collection: diff_collection(_dump(baseline, collection), _dump(current, collection))
        for collection in WATCHED_COLLECTIONS
    }
