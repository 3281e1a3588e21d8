"""
Life-event request and outcome types.

An event moves through SUBMITTED -> VALIDATED -> APPLIED -> COMMITTED, or
ends REJECTED from any of the first three states. Only COMMITTED events are
visible to readers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from ..errors import FormatError
from ..records import Role
from ..store import Mutation, VersionRef


class EventType(str, Enum):
    BIRTH = "birth"
    TRANSFER_IN = "transfer_in"
    MOVE = "move"
    TRANSFER_OUT = "transfer_out"
    DEATH = "death"
    MARRIAGE = "marriage"
    DIVORCE = "divorce"
    HOUSEHOLD_CHANGE = "household_change"
    SEAL_REGISTER = "seal_register"
    SEAL_SUSPEND = "seal_suspend"
    SEAL_CANCEL = "seal_cancel"
    CARD_ISSUE = "card_issue"
    CARD_CANCEL = "card_cancel"
    SUPPORT_START = "support_start"
    SUPPORT_END = "support_end"

    @classmethod
    def parse(cls, value: EventType | str) -> EventType:
        """Accept an EventType, its value (``"move"``) or its name (``"MOVE"``)."""
        if isinstance(value, EventType):
            return value
        text = str(value).strip()
        try:
            return cls(text.lower())
        except ValueError:
            raise FormatError("event_type", f"unknown event type {value!r}") from None


class EventState(str, Enum):
    SUBMITTED = "submitted"
    VALIDATED = "validated"
    APPLIED = "applied"
    COMMITTED = "committed"
    REJECTED = "rejected"


def parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise FormatError(field_name, f"expected an ISO date, got {value!r}")


def parse_role(value: Any, field_name: str) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise FormatError(field_name, f"unknown role {value!r}") from None


class Payload:
    """
    Typed access to an event payload.

    Every getter raises FormatError naming the offending field, so malformed
    input is rejected before any record is read.
    """

    def __init__(self, data: Any, prefix: str = ""):
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise FormatError(prefix or "payload", "expected an object")
        self.data = data
        self.prefix = prefix

    def path(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def __contains__(self, name: str) -> bool:
        return self.data.get(name) is not None

    def raw(self, name: str, *, required: bool = False) -> Any:
        value = self.data.get(name)
        if value is None and required:
            raise FormatError(self.path(name), "is required")
        return value

    def get_str(self, name: str, *, required: bool = True, default: str | None = None) -> str | None:
        value = self.data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                raise FormatError(self.path(name), "is required")
            return default
        if not isinstance(value, (str, int)) or isinstance(value, bool):
            raise FormatError(self.path(name), "expected a string")
        return str(value).strip()

    def get_date(self, name: str, *, required: bool = True, default: date | None = None) -> date | None:
        value = self.data.get(name)
        if value is None:
            if required:
                raise FormatError(self.path(name), "is required")
            return default
        return parse_date(value, self.path(name))

    def get_bool(self, name: str, default: bool = False) -> bool:
        value = self.data.get(name)
        if value is None:
            return default
        if not isinstance(value, bool):
            raise FormatError(self.path(name), "expected true or false")
        return value

    def get_role(self, name: str, *, default: Role | None = None) -> Role:
        value = self.data.get(name)
        if value is None:
            if default is None:
                raise FormatError(self.path(name), "is required")
            return default
        return parse_role(value, self.path(name))

    def get_obj(self, name: str, *, required: bool = True) -> Payload | None:
        value = self.data.get(name)
        if value is None:
            if required:
                raise FormatError(self.path(name), "is required")
            return None
        return Payload(value, self.path(name))

    def get_list(self, name: str) -> list[Any]:
        value = self.data.get(name)
        if value is None:
            return []
        if not isinstance(value, list):
            raise FormatError(self.path(name), "expected a list")
        return value

    def ids(self, single: str, plural: str) -> list[str]:
        """Ids from either ``single`` (one id) or ``plural`` (a list), in order, deduplicated."""
        values: list[Any] = []
        if single in self:
            values.append(self.data[single])
        values.extend(self.get_list(plural))
        if not values:
            raise FormatError(self.path(single), "is required")
        result: list[str] = []
        for value in values:
            if not isinstance(value, str) or not value.strip():
                raise FormatError(self.path(plural), "expected record ids")
            if value.strip() not in result:
                result.append(value.strip())
        return result


@dataclass(frozen=True)
class ApplicationRef:
    """
    Application an event is filed under.

    Either names an existing application (``application_id``) or describes a
    new one, created in the same unit as the event.
    """

    applicant: str = "unknown"
    application_type: str | None = None
    accepted_at: date | None = None
    application_id: str | None = None

    @classmethod
    def coerce(cls, value: ApplicationRef | str | dict[str, Any] | None) -> ApplicationRef:
        if value is None:
            return cls()
        if isinstance(value, ApplicationRef):
            return value
        if isinstance(value, str):
            return cls(application_id=value)
        if isinstance(value, dict):
            data = Payload(value, "application")
            return cls(
                applicant=data.get_str("applicant", required=False, default="unknown") or "unknown",
                application_type=data.get_str("application_type", required=False),
                accepted_at=data.get_date("accepted_at", required=False),
                application_id=data.get_str("application_id", required=False),
            )
        raise FormatError("application", "expected an application id or object")


@dataclass(frozen=True)
class EventRequest:
    event_type: EventType
    effective_date: date
    payload: dict[str, Any] = field(default_factory=dict)
    application: ApplicationRef = field(default_factory=ApplicationRef)

    @classmethod
    def build(
        cls,
        event_type: EventType | str,
        effective_date: date | str,
        payload: dict[str, Any] | None = None,
        application: ApplicationRef | str | dict[str, Any] | None = None,
    ) -> EventRequest:
        if payload is not None and not isinstance(payload, dict):
            raise FormatError("payload", "expected an object")
        return cls(
            event_type=EventType.parse(event_type),
            effective_date=parse_date(effective_date, "effective_date"),
            payload=dict(payload or {}),
            application=ApplicationRef.coerce(application),
        )


@dataclass
class EventOutcome:
    """Result of a committed event."""

    life_event_id: str
    life_event_ids: list[str]
    application_id: str
    seq: int
    versions: list[VersionRef] = field(default_factory=list)
    cascades: list[str] = field(default_factory=list)
    state: EventState = EventState.COMMITTED
    mutations: list[Mutation] = field(default_factory=list, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "life_event_id": self.life_event_id,
            "life_event_ids": list(self.life_event_ids),
            "application_id": self.application_id,
            "seq": self.seq,
            "versions": [v.to_dict() for v in self.versions],
            "cascades": list(self.cascades),
        }
