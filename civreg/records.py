"""
Registry record types.

Records are immutable values. A change to an entity is a new version of the
record written through a unit of work; prior versions stay in the store.
Household membership is a time-ranged fact table rather than a pointer from
household to head, so "current head" is always a derived query.
"""

from __future__ import annotations

import os
import time
import types
import typing
from dataclasses import dataclass, field, fields, replace
from datetime import date
from enum import Enum
from functools import lru_cache
from typing import Any, ClassVar


class Role(str, Enum):
    HEAD = "head"
    SPOUSE = "spouse"
    CHILD = "child"
    PARENT = "parent"
    SIBLING = "sibling"
    OTHER = "other"


class RegistrationStatus(str, Enum):
    """Status shared by seal registrations and identity cards."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


# -----------------------------------------------------------------------------
# Surrogate ids
# -----------------------------------------------------------------------------

_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def new_ulid() -> str:
    """26-char ULID: 48-bit millisecond clock, 80 random bits, Crockford base32."""
    value = (time.time_ns() // 1_000_000) << 80 | int.from_bytes(os.urandom(10), "big")
    return "".join(_ULID_ALPHABET[(value >> shift) & 31] for shift in range(125, -1, -5))


def new_id(prefix: str) -> str:
    """Surrogate id for a record family, e.g. ``res_01J...``. Sorts by creation time."""
    return f"{prefix}_{new_ulid()}"


# ISO/IEC 5218 sex codes.
GENDER_CODES = frozenset({"0", "1", "2", "9"})

RESIDENCY_TERMINATED = "residency terminated"


@dataclass(frozen=True)
class Period:
    """
    Half-open date range [start, end).

    A period with end D does not cover D, so a successor starting on D neither
    overlaps it nor leaves a gap. ``end=None`` means open-ended.
    """

    start: date
    end: date | None = None

    @property
    def is_open(self) -> bool:
        return self.end is None

    @property
    def is_ordered(self) -> bool:
        return self.end is None or self.end >= self.start

    @property
    def is_empty(self) -> bool:
        return self.end is not None and self.end <= self.start

    def covers(self, day: date) -> bool:
        return self.start <= day and (self.end is None or day < self.end)

    def overlaps(self, other: Period) -> bool:
        if self.is_empty or other.is_empty:
            return False
        starts_before_other_ends = other.end is None or self.start < other.end
        ends_after_other_starts = self.end is None or other.start < self.end
        return starts_before_other_ends and ends_after_other_starts

    def contains(self, other: Period) -> bool:
        if other.is_empty:
            return self.start <= other.start and (self.end is None or other.start <= self.end)
        if other.start < self.start:
            return False
        if self.end is None:
            return True
        return other.end is not None and other.end <= self.end

    def close(self, day: date) -> Period:
        return replace(self, end=day)

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat() if self.end else None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Period:
        end = data.get("end")
        return cls(start=date.fromisoformat(data["start"]), end=date.fromisoformat(end) if end else None)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Period):
        return value.to_dict()
    return value


def _decode(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin in (types.UnionType, typing.Union):
        inner = [a for a in typing.get_args(hint) if a is not type(None)]
        return _decode(value, inner[0]) if inner else value
    if origin is not None:
        return value
    if hint is date:
        return date.fromisoformat(value)
    if hint is Period:
        return Period.from_dict(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@lru_cache(maxsize=None)
def _hints(cls: type) -> dict[str, Any]:
    return typing.get_type_hints(cls)


@dataclass(frozen=True)
class Record:
    """Base for every stored entity. Subclasses set ``collection``."""

    collection: ClassVar[str] = ""
    id_prefix: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        hints = _hints(cls)
        kwargs = {f.name: _decode(data[f.name], hints[f.name]) for f in fields(cls) if f.name in data}
        return cls(**kwargs)


@dataclass(frozen=True)
class Address(Record):
    """Deduplicated location. Never updated once written; a change is a new record."""

    collection: ClassVar[str] = "address"
    id_prefix: ClassVar[str] = "adr"

    id: str
    prefecture_code: str
    municipality_code: str
    town: str = ""
    block: str = ""
    lot: str = ""
    building: str = ""
    postal_code: str = ""

    def dedup_key(self) -> tuple[str, ...]:
        return (
            self.prefecture_code,
            self.municipality_code,
            self.town,
            self.block,
            self.lot,
            self.building,
            self.postal_code,
        )


@dataclass(frozen=True)
class Resident(Record):
    collection: ClassVar[str] = "resident"
    id_prefix: ClassVar[str] = "res"

    id: str
    personal_number: str
    registry_code: str
    name: str
    birth_date: date
    gender: str
    residency: Period
    address_id: str | None = None
    household_id: str | None = None
    protective_measure: bool = False
    guardianship: bool = False

    @property
    def is_active(self) -> bool:
        return self.residency.is_open


@dataclass(frozen=True)
class Household(Record):
    collection: ClassVar[str] = "household"
    id_prefix: ClassVar[str] = "hh"

    id: str
    household_number: str
    address_id: str | None
    period: Period


@dataclass(frozen=True)
class Membership(Record):
    collection: ClassVar[str] = "membership"
    id_prefix: ClassVar[str] = "mem"

    id: str
    resident_id: str
    household_id: str
    role: Role
    period: Period


@dataclass(frozen=True)
class LifeEventRecord(Record):
    """Append-only log entry. Written once, never updated."""

    collection: ClassVar[str] = "life_event"
    id_prefix: ClassVar[str] = "evt"

    id: str
    event_type: str
    resident_id: str
    change_date: date
    notification_date: date
    processing_date: date
    application_id: str | None = None
    prior_address_id: str | None = None
    new_address_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Application(Record):
    collection: ClassVar[str] = "application"
    id_prefix: ClassVar[str] = "app"

    id: str
    applicant: str
    application_type: str
    accepted_at: date
    status: ApplicationStatus = ApplicationStatus.PENDING
    rejection_reason: str | None = None


@dataclass(frozen=True)
class SealRegistration(Record):
    collection: ClassVar[str] = "seal_registration"
    id_prefix: ClassVar[str] = "seal"

    id: str
    resident_id: str
    seal_number: str
    registration_date: date
    status: RegistrationStatus = RegistrationStatus.ACTIVE
    suspended_date: date | None = None
    cancellation_date: date | None = None
    cancellation_reason: str | None = None

    def active_period(self) -> Period:
        """Dates on which this registration counted as ACTIVE."""
        ends = [d for d in (self.suspended_date, self.cancellation_date) if d is not None]
        return Period(self.registration_date, min(ends) if ends else None)


@dataclass(frozen=True)
class IdentityCard(Record):
    collection: ClassVar[str] = "identity_card"
    id_prefix: ClassVar[str] = "card"

    id: str
    resident_id: str
    card_number: str
    issuance_date: date
    expiration_date: date
    status: RegistrationStatus = RegistrationStatus.ACTIVE
    cancellation_date: date | None = None
    cancellation_reason: str | None = None

    def active_period(self) -> Period:
        end = self.expiration_date
        if self.cancellation_date is not None and self.cancellation_date < end:
            end = self.cancellation_date
        return Period(self.issuance_date, end)


@dataclass(frozen=True)
class SupportMeasure(Record):
    collection: ClassVar[str] = "support_measure"
    id_prefix: ClassVar[str] = "sup"

    id: str
    resident_id: str
    measure_type: str
    period: Period


GUARDIANSHIP = "guardianship"


RECORD_TYPES: dict[str, type[Record]] = {
    cls.collection: cls
    for cls in (
        Address,
        Resident,
        Household,
        Membership,
        LifeEventRecord,
        Application,
        SealRegistration,
        IdentityCard,
        SupportMeasure,
    )
}


def record_from_dict(collection: str, data: dict[str, Any]) -> Record:
    cls = RECORD_TYPES.get(collection)
    if cls is None:
        raise ValueError(f"Unknown collection: {collection}")
    return cls.from_dict(data)
