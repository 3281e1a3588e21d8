"""
Immutable version entries for the record store.

Each committed unit of work is one line in records.jsonl. A line is never
modified; the current state of a record is its newest version.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from ..records import Record, record_from_dict


@dataclass(frozen=True)
class RecordVersion:
    """
    One version of one record.

    ``seq`` is the commit sequence of the unit that wrote it (transaction
    time); ``valid_from`` is the effective date of the change (valid time).
    """

    collection: str
    record_id: str
    seq: int
    valid_from: date
    record: Record

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "record_id": self.record_id,
            "valid_from": self.valid_from.isoformat(),
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], seq: int) -> RecordVersion:
        collection = data["collection"]
        return cls(
            collection=collection,
            record_id=data["record_id"],
            seq=seq,
            valid_from=date.fromisoformat(data["valid_from"]),
            record=record_from_dict(collection, data["record"]),
        )


@dataclass(frozen=True)
class VersionRef:
    """Pointer to a committed version, returned to callers."""

    collection: str
    record_id: str
    seq: int

    def to_dict(self) -> dict[str, Any]:
        return {"collection": self.collection, "record_id": self.record_id, "seq": self.seq}


@dataclass(frozen=True)
class CommittedUnit:
    """All versions written by one unit of work, committed under one sequence number."""

    unit_id: str
    seq: int
    committed_at: datetime
    versions: tuple[RecordVersion, ...]
    keys: tuple[str, ...] = ()
    label: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def refs(self) -> list[VersionRef]:
        return [VersionRef(v.collection, v.record_id, v.seq) for v in self.versions]

    def to_json(self) -> str:
        data: dict[str, Any] = {
            "unit_id": self.unit_id,
            "seq": self.seq,
            "committed_at": self.committed_at.isoformat(),
            "keys": list(self.keys),
            "versions": [v.to_dict() for v in self.versions],
        }
        if self.label:
            data["label"] = self.label
        if self.metadata:
            data["metadata"] = self.metadata
        return json.dumps(data, separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> CommittedUnit:
        data = json.loads(line)
        seq = int(data["seq"])
        return cls(
            unit_id=data["unit_id"],
            seq=seq,
            committed_at=datetime.fromisoformat(data["committed_at"]),
            versions=tuple(RecordVersion.from_dict(v, seq) for v in data.get("versions", [])),
            keys=tuple(data.get("keys", [])),
            label=data.get("label", ""),
            metadata=data.get("metadata", {}),
        )
