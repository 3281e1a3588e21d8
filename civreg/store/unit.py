"""
Unit of work: tentative mutations layered over a read snapshot.

A unit collects every record write derived from one submitted event (base
mutations and cascades) without touching the store. Reads inside the unit see
the snapshot the unit started from plus its own pending writes. Keys read and
written are tracked so the store can detect conflicting concurrent commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..errors import NotFound
from ..records import Record, new_ulid

if TYPE_CHECKING:
    from .store import Snapshot


# Reference fields that tie a record to the aggregate it belongs to. Scans by
# these fields and writes of records carrying them register a conflict key
# for the referenced aggregate.
OWNER_FIELDS = ("resident_id", "household_id")


def record_key(collection: str, record_id: str) -> str:
    return f"{collection}:{record_id}"


def owner_keys(record: Record) -> list[str]:
    keys: list[str] = []
    for name in OWNER_FIELDS:
        value = getattr(record, name, None)
        if value:
            keys.append(record_key(name[: -len("_id")], value))
    return keys


def matches(record: Record, equals: dict[str, Any]) -> bool:
    return all(getattr(record, k, None) == v for k, v in equals.items())


@dataclass(frozen=True)
class Mutation:
    """One record write: prior state (None when created) and new state."""

    collection: str
    record_id: str
    before: Record | None
    after: Record
    valid_from: date

    @property
    def created(self) -> bool:
        return self.before is None

    @property
    def key(self) -> str:
        return record_key(self.collection, self.record_id)


class UnitOfWork:
    """
    Tentative mutation set for one event.

    Nothing here is visible to other readers until RecordStore.commit_unit()
    succeeds; discarding the object discards the whole set.
    """

    def __init__(self, snapshot: Snapshot, *, label: str = ""):
        self.unit_id = new_ulid()
        self.snapshot = snapshot
        self.base_seq = snapshot.seq
        self.label = label
        self.metadata: dict[str, Any] = {}
        self.journal: list[Mutation] = []
        self._pending: dict[tuple[str, str], tuple[Record, date]] = {}
        self._read_keys: set[str] = set()
        self._write_keys: set[str] = set()

    # -------------------------------------------------------------------------
    # Conflict keys
    # -------------------------------------------------------------------------

    def touch(self, *keys: str) -> None:
        """Register keys this unit's decisions depend on."""
        self._read_keys.update(keys)

    def claim(self, *keys: str) -> None:
        """Register keys this unit writes."""
        self._write_keys.update(keys)

    @property
    def write_keys(self) -> set[str]:
        return set(self._write_keys)

    def keys(self) -> set[str]:
        return self._read_keys | self._write_keys

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, collection: str, record_id: str) -> Record | None:
        self._read_keys.add(record_key(collection, record_id))
        pending = self._pending.get((collection, record_id))
        if pending is not None:
            return pending[0]
        return self.snapshot.get(collection, record_id)

    def require(self, collection: str, record_id: str | None) -> Record:
        record = self.get(collection, record_id) if record_id else None
        if record is None:
            raise NotFound(collection, record_id or "")
        return record

    def scan(
        self,
        collection: str,
        where: Callable[[Record], bool] | None = None,
        **equals: Any,
    ) -> list[Record]:
        """Records of a collection as this unit sees them, filtered by field equality and predicate."""
        for name in OWNER_FIELDS:
            if equals.get(name):
                self._read_keys.add(record_key(name[: -len("_id")], equals[name]))

        seen: set[str] = set()
        results: list[Record] = []
        for record in self.snapshot.scan(collection, **equals):
            seen.add(record.id)  # type: ignore[attr-defined]
            pending = self._pending.get((collection, record.id))  # type: ignore[attr-defined]
            current = pending[0] if pending is not None else record
            if matches(current, equals) and (where is None or where(current)):
                results.append(current)

        for (coll, record_id), (record, _) in self._pending.items():
            if coll != collection or record_id in seen:
                continue
            if matches(record, equals) and (where is None or where(record)):
                results.append(record)
        return results

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def put(self, record: Record, *, valid_from: date) -> Mutation:
        collection = record.collection
        record_id = record.id  # type: ignore[attr-defined]
        key = (collection, record_id)
        pending = self._pending.get(key)
        before = pending[0] if pending is not None else self.snapshot.get(collection, record_id)

        mutation = Mutation(collection, record_id, before, record, valid_from)
        self._pending[key] = (record, valid_from)
        self.journal.append(mutation)
        self.claim(record_key(collection, record_id), *owner_keys(record))
        return mutation

    def put_all(self, records: Iterable[Record], *, valid_from: date) -> list[Mutation]:
        return [self.put(r, valid_from=valid_from) for r in records]

    @property
    def is_empty(self) -> bool:
        return not self._pending

    def pending(self) -> list[tuple[Record, date]]:
        return list(self._pending.values())

    def mutations(self, keys: set[str] | None = None) -> list[Mutation]:
        """
        Collapsed mutation set: one entry per record, before = snapshot state.

        Args:
            keys: Optional record keys ("collection:id") to restrict to
        """
        result: list[Mutation] = []
        for (collection, record_id), (record, valid_from) in self._pending.items():
            if keys is not None and record_key(collection, record_id) not in keys:
                continue
            before = self.snapshot.get(collection, record_id)
            result.append(Mutation(collection, record_id, before, record, valid_from))
        return result
