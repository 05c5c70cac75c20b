from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional


ChangeKind = Literal["added", "modified", "removed"]

ADDED: ChangeKind = "added"
MODIFIED: ChangeKind = "modified"
REMOVED: ChangeKind = "removed"

_OPERATION_KINDS: Dict[str, ChangeKind] = {
    "insert": ADDED,
    "update": MODIFIED,
    "replace": MODIFIED,
    "delete": REMOVED,
}


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    document_id: str
    document: Optional[Dict[str, Any]] = None
    updated_fields: FrozenSet[str] = field(default_factory=frozenset)

    def touches_only(self, name: str) -> bool:
        """True for a modification limited to ``name`` and its subfields."""
        if self.kind != MODIFIED or not self.updated_fields:
            return False
        return all(f == name or f.startswith(name + ".") for f in self.updated_fields)

    @property
    def is_poll_update(self) -> bool:
        return self.touches_only("poll")


def change_from_stream_event(event: Mapping[str, Any]) -> Optional[ChangeEvent]:
    kind = _OPERATION_KINDS.get(event.get("operationType", ""))
    if kind is None:
        # drop/rename/invalidate carry no document
        return None
    key = event.get("documentKey") or {}
    description = event.get("updateDescription") or {}
    updated = set((description.get("updatedFields") or {}).keys())
    updated.update(description.get("removedFields") or [])
    document = event.get("fullDocument")
    if document is not None:
        document = dict(document)
        document["_id"] = str(document["_id"])
    return ChangeEvent(
        kind=kind,
        document_id=str(key.get("_id")),
        document=document,
        updated_fields=frozenset(updated),
    )
