"""
Identity resolver.

Maps externally issued identifiers (personal number, registry code) to the
internal surrogate resident id. The resolver keeps its own uniqueness index,
separate from the entity collections, so identity conflicts are detected
before any domain mutation is attempted.
"""

from __future__ import annotations

import logging
import threading

from .errors import IdentityConflict, NotFound
from .records import Resident
from .store import CommittedUnit, RecordStore, UnitOfWork

logger = logging.getLogger(__name__)

IDENTIFIER_FIELDS = ("personal_number", "registry_code")


def identifier_key(field: str, value: str) -> str:
    return f"{field}:{value}"


class IdentityResolver:
    def __init__(self, store: RecordStore):
        self.store = store
        self._lock = threading.Lock()
        self._seen_seq = 0
        self._index: dict[str, dict[str, str]] = {f: {} for f in IDENTIFIER_FIELDS}
        with self._lock:
            self._catch_up()
        store.subscribe(self._on_commit)

    def _catch_up(self) -> None:
        """Index every unit committed since the last one seen, in commit order."""
        for unit in self.store.units_since(self._seen_seq):
            for version in unit.versions:
                if version.collection != Resident.collection:
                    continue
                resident = version.record
                for field in IDENTIFIER_FIELDS:
                    self._index[field].setdefault(getattr(resident, field), resident.id)  # type: ignore[attr-defined]
            self._seen_seq = unit.seq

    def _on_commit(self, unit: CommittedUnit) -> None:
        # Listeners of concurrent commits may run in any order; the store's
        # unit list is the ordering.
        with self._lock:
            self._catch_up()

    def lookup(self, field: str, value: str) -> str | None:
        with self._lock:
            self._catch_up()
            return self._index[field].get(value)

    def resolve(self, *, personal_number: str | None = None, registry_code: str | None = None) -> str:
        """
        Resolve an external identifier to a resident id.

        Raises:
            NotFound: no resident carries the identifier
            ValueError: neither identifier given
        """
        if personal_number:
            found = self.lookup("personal_number", personal_number)
            if found is None:
                raise NotFound("resident", f"personal_number={personal_number}")
            return found
        if registry_code:
            found = self.lookup("registry_code", registry_code)
            if found is None:
                raise NotFound("resident", f"registry_code={registry_code}")
            return found
        raise ValueError("personal_number or registry_code is required")

    def register(self, candidate: Resident, unit: UnitOfWork) -> str:
        """
        Bind a candidate resident's identifiers inside a unit of work.

        The binding becomes visible once the unit commits. Identifier keys are
        claimed on the unit, so two units registering the same identifier
        concurrently cannot both commit.

        Raises:
            IdentityConflict: an identifier is bound to a different resident,
                either committed or pending in the same unit
        """
        for field in IDENTIFIER_FIELDS:
            value = getattr(candidate, field)
            existing = self.lookup(field, value)
            if existing is None:
                for pending, _ in unit.pending():
                    if (
                        isinstance(pending, Resident)
                        and pending.id != candidate.id
                        and getattr(pending, field) == value
                    ):
                        existing = pending.id
                        break
            if existing is not None and existing != candidate.id:
                logger.warning("Identity conflict on %s for resident %s", field, existing)
                raise IdentityConflict(field, value, existing)
            unit.touch(identifier_key(field, value))
            unit.claim(identifier_key(field, value))
        return candidate.id
