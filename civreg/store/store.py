"""
Versioned record store.

The store is the leaf of the system: it knows nothing about residents or
households, only collections of records keyed by surrogate id, each with an
append-only list of versions. Units of work commit atomically under a single
sequence number; readers pin a sequence number and never observe a later
commit (snapshot isolation).

Persistence is a JSON Lines file with one line per committed unit. A unit is
written in a single write call, so a torn write loses that whole unit on
reload and never half of it.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from ..errors import ConcurrencyConflict
from ..records import Record
from .unit import UnitOfWork, matches
from .versions import CommittedUnit, RecordVersion

logger = logging.getLogger(__name__)


# Secondary indexes. Indexed fields never change across versions of a record.
INDEXED_FIELDS: dict[str, tuple[str, ...]] = {
    "membership": ("resident_id", "household_id"),
    "life_event": ("resident_id", "application_id"),
    "seal_registration": ("resident_id",),
    "identity_card": ("resident_id",),
    "support_measure": ("resident_id",),
}

UnitListener = Callable[[CommittedUnit], None]


class Snapshot:
    """Read view of the store pinned at one commit sequence."""

    def __init__(self, store: RecordStore, seq: int):
        self.store = store
        self.seq = seq

    def get(self, collection: str, record_id: str, *, as_of: date | None = None) -> Record | None:
        return self.store.get(collection, record_id, as_of=as_of, at_seq=self.seq)

    def scan(
        self,
        collection: str,
        where: Callable[[Record], bool] | None = None,
        *,
        as_of: date | None = None,
        **equals: Any,
    ) -> list[Record]:
        return self.store.range_scan(collection, where, as_of=as_of, at_seq=self.seq, **equals)

    def versions(self, collection: str, record_id: str) -> list[RecordVersion]:
        return self.store.versions(collection, record_id, at_seq=self.seq)


class RecordStore:
    """
    Append-only versioned storage with optimistic unit commits.

    INVARIANT: committed versions are never modified or removed. The only
    write operation is commit_unit().
    """

    def __init__(self, data_dir: Path | None = None):
        """
        Initialize store.

        Args:
            data_dir: Directory holding records.jsonl; None keeps everything in memory
        """
        self.data_dir = data_dir
        self.path = data_dir / "records.jsonl" if data_dir is not None else None

        self._lock = threading.RLock()
        self._loaded = False
        self._needs_newline = False
        self._seq = 0
        self._units: list[CommittedUnit] = []
        self._versions: dict[tuple[str, str], list[RecordVersion]] = {}
        self._by_collection: dict[str, list[str]] = {}
        self._field_index: dict[tuple[str, str], dict[Any, list[str]]] = {}
        self._key_seq: dict[str, int] = {}
        self._listeners: list[UnitListener] = []

    # -------------------------------------------------------------------------
    # Loading and indexing
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Load persisted units on first use. Idempotent."""
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            for unit in self._read_units():
                self._apply(unit)
            self._loaded = True

    def _read_units(self) -> Iterator[CommittedUnit]:
        if self.path is None or not self.path.exists():
            return

        text = self.path.read_text(encoding="utf-8")
        self._needs_newline = bool(text) and not text.endswith("\n")
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield CommittedUnit.from_json(line)
            except (ValueError, KeyError) as e:
                logger.warning("Skipping unreadable unit at %s:%d (%s)", self.path, lineno, e)

    def _apply(self, unit: CommittedUnit) -> None:
        for version in unit.versions:
            key = (version.collection, version.record_id)
            history = self._versions.setdefault(key, [])
            if not history:
                self._by_collection.setdefault(version.collection, []).append(version.record_id)
                for field_name in INDEXED_FIELDS.get(version.collection, ()):
                    value = getattr(version.record, field_name, None)
                    if value is not None:
                        index = self._field_index.setdefault((version.collection, field_name), {})
                        index.setdefault(value, []).append(version.record_id)
            history.append(version)

        for key in unit.keys:
            self._key_seq[key] = unit.seq
        self._units.append(unit)
        self._seq = max(self._seq, unit.seq)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def sequence(self) -> int:
        """Sequence number of the latest committed unit (0 when empty)."""
        self._ensure_loaded()
        return self._seq

    def snapshot(self, seq: int | None = None) -> Snapshot:
        self._ensure_loaded()
        return Snapshot(self, self._seq if seq is None else seq)

    def versions(self, collection: str, record_id: str, *, at_seq: int | None = None) -> list[RecordVersion]:
        """All versions of one record in commit order."""
        self._ensure_loaded()
        history = self._versions.get((collection, record_id), [])
        if at_seq is None:
            return list(history)
        return [v for v in history if v.seq <= at_seq]

    def get(
        self,
        collection: str,
        record_id: str,
        *,
        as_of: date | None = None,
        at_seq: int | None = None,
    ) -> Record | None:
        """
        Get one record.

        Args:
            collection: Record family
            record_id: Surrogate id
            as_of: Effective date; returns the version in force on that date
            at_seq: Commit sequence to read at (defaults to latest)

        Returns:
            The record, or None if it did not exist at that point
        """
        history = self.versions(collection, record_id, at_seq=at_seq)
        if as_of is not None:
            history = [v for v in history if v.valid_from <= as_of]
            if not history:
                return None
            return max(history, key=lambda v: (v.valid_from, v.seq)).record
        return history[-1].record if history else None

    def ids(self, collection: str, **equals: Any) -> list[str]:
        """Record ids of a collection, narrowed by an indexed field when one is given."""
        self._ensure_loaded()
        for field_name in INDEXED_FIELDS.get(collection, ()):
            if field_name in equals:
                index = self._field_index.get((collection, field_name), {})
                return list(index.get(equals[field_name], []))
        return list(self._by_collection.get(collection, []))

    def range_scan(
        self,
        collection: str,
        where: Callable[[Record], bool] | None = None,
        *,
        as_of: date | None = None,
        at_seq: int | None = None,
        **equals: Any,
    ) -> list[Record]:
        """
        Scan a collection.

        Indexed fields in ``equals`` narrow the candidate set; every equality
        and the ``where`` predicate are then applied to the selected versions.
        """
        results: list[Record] = []
        for record_id in self.ids(collection, **equals):
            record = self.get(collection, record_id, as_of=as_of, at_seq=at_seq)
            if record is None:
                continue
            if not matches(record, equals):
                continue
            if where is not None and not where(record):
                continue
            results.append(record)
        return results

    def units_since(self, seq: int) -> list[CommittedUnit]:
        self._ensure_loaded()
        with self._lock:
            return [u for u in self._units if u.seq > seq]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def begin(self, label: str = "") -> UnitOfWork:
        """Start a unit of work against the current snapshot."""
        return UnitOfWork(self.snapshot(), label=label)

    def put(self, record: Record, *, valid_from: date, label: str = "put") -> CommittedUnit:
        """Write a single record version as its own unit."""
        unit = self.begin(label)
        unit.put(record, valid_from=valid_from)
        return self.commit_unit(unit)

    def subscribe(self, listener: UnitListener) -> None:
        """Call ``listener`` after every successful commit."""
        self._listeners.append(listener)

    def commit_unit(self, unit: UnitOfWork) -> CommittedUnit:
        """
        Commit all pending writes of a unit atomically.

        Raises:
            ConcurrencyConflict: a key the unit read or wrote was written by a
                unit committed after this unit's snapshot
        """
        self._ensure_loaded()
        with self._lock:
            conflicts = [k for k in unit.keys() if self._key_seq.get(k, 0) > unit.base_seq]
            if conflicts:
                raise ConcurrencyConflict(conflicts)

            seq = self._seq + 1
            versions = tuple(
                RecordVersion(
                    collection=record.collection,
                    record_id=record.id,  # type: ignore[attr-defined]
                    seq=seq,
                    valid_from=valid_from,
                    record=record,
                )
                for record, valid_from in unit.pending()
            )
            committed = CommittedUnit(
                unit_id=unit.unit_id,
                seq=seq,
                committed_at=datetime.now(timezone.utc),
                versions=versions,
                keys=tuple(sorted(unit.write_keys)),
                label=unit.label,
                metadata=dict(unit.metadata),
            )
            self._write(committed)
            self._apply(committed)

        for listener in self._listeners:
            listener(committed)
        return committed

    def _write(self, unit: CommittedUnit) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        prefix = "\n" if self._needs_newline else ""
        with self.path.open("a", encoding="utf-8") as f:
            f.write(prefix + unit.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._needs_newline = False
