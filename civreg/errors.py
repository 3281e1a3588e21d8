"""
Error taxonomy for the registry core.

Every rejection of a submitted event is an EventError subclass and names the
field, invariant or record that caused it. Nothing is partially applied when
one of these is raised. Infrastructure faults (OSError from the store) are not
wrapped and surface unchanged.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .constraints.schema import Violation


class RegistryError(Exception):
    """Base class for all registry errors."""


class EventError(RegistryError):
    """A submitted event was rejected; the unit of work was discarded."""

    kind = "event_error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class FormatError(EventError):
    """Malformed input field, rejected before touching the store."""

    kind = "format_error"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict:
        return {"kind": self.kind, "field": self.field, "message": str(self)}


class InvariantViolation(EventError):
    """One or more invariants failed for the tentative post-mutation state."""

    kind = "invariant_violation"

    def __init__(self, violations: Iterable[Violation]):
        self.violations = list(violations)
        parts = [f"{v.invariant} ({v.rule}) on {v.collection}:{v.entity_id}: {v.message}" for v in self.violations]
        super().__init__("; ".join(parts) or "invariant violation")

    @property
    def invariants(self) -> list[str]:
        seen: list[str] = []
        for v in self.violations:
            if v.invariant not in seen:
                seen.append(v.invariant)
        return seen

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": str(self),
            "violations": [v.to_dict() for v in self.violations],
        }


class IdentityConflict(InvariantViolation):
    """An external identifier is already bound to a different resident."""

    kind = "identity_conflict"

    def __init__(self, field: str, value: str, existing_id: str):
        from .constraints.schema import Violation

        self.field = field
        self.value = value
        self.existing_id = existing_id
        super().__init__(
            [
                Violation(
                    invariant="identity",
                    rule=f"resident.{field}_unique",
                    collection="resident",
                    entity_id=existing_id,
                    message=f"{field} {value} is already bound to resident {existing_id}",
                )
            ]
        )


class SequenceError(EventError):
    """Event effective date precedes the known history of a resident or household."""

    kind = "sequence_error"

    def __init__(self, record_id: str, effective_date: date, last_known: date, *, collection: str = "resident"):
        self.record_id = record_id
        self.collection = collection
        self.effective_date = effective_date
        self.last_known = last_known
        super().__init__(
            f"{collection} {record_id}: effective date {effective_date.isoformat()} "
            f"precedes recorded history at {last_known.isoformat()}"
        )


class ConcurrencyConflict(EventError):
    """Another unit committed a conflicting change first; resubmit."""

    kind = "concurrency_conflict"

    def __init__(self, keys: Iterable[str]):
        self.keys = sorted(set(keys))
        super().__init__(f"conflicting concurrent commit on {', '.join(self.keys)}")


class NotFound(EventError):
    """Referenced resident, household, address or registration does not exist."""

    kind = "not_found"

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} not found: {record_id}")


class NoHeadError(RegistryError):
    """No HEAD membership covers the requested date (None: currently)."""

    def __init__(self, household_id: str, as_of: date | None = None):
        self.household_id = household_id
        self.as_of = as_of
        when = f"on {as_of.isoformat()}" if as_of else "currently"
        super().__init__(f"household {household_id} has no head {when}")


# Names used by the external submit contract.
ValidationFailed = InvariantViolation
Conflict = ConcurrencyConflict
OutOfSequence = SequenceError
