"""
Life-event handlers.

One handler per event type. A handler reads the unit of work, stages the base
mutations for its event and appends a LifeEventRecord for every resident the
event affects. Handlers do not validate invariants; the processor does that
after cascades have run, over the complete mutation set.

Household composition changes share one edit language, accepted by MOVE,
TRANSFER_OUT, DEATH, MARRIAGE, DIVORCE and HOUSEHOLD_CHANGE:

    new_household:      {household_number, address?}   referenced as "new"
    dissolve_household: household id
    memberships:        [{action: start|end|role, resident_id, household_id?, role?}]
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable

from ..addresses import resolve_address
from ..cascade import close_open_memberships, ensure_household_in_sequence, sync_support_flags
from ..constraints.schema import Violation
from ..errors import FormatError, InvariantViolation, NotFound, SequenceError
from ..identity import IdentityResolver
from ..records import (
    Household,
    IdentityCard,
    LifeEventRecord,
    Membership,
    Period,
    RegistrationStatus,
    Resident,
    Role,
    SealRegistration,
    SupportMeasure,
    new_id,
)
from ..store import UnitOfWork
from .events import EventRequest, EventType, Payload

NEW_HOUSEHOLD = "new"
SUPERSEDED = "superseded"
REISSUED = "reissued"


@dataclass
class EventContext:
    unit: UnitOfWork
    request: EventRequest
    resolver: IdentityResolver
    processing_date: date
    notification_date: date
    application_id: str
    life_events: list[LifeEventRecord] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)
    sequenced: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.payload = Payload(self.request.payload)

    @property
    def day(self) -> date:
        return self.request.effective_date


Handler = Callable[[EventContext], None]


def state_error(collection: str, record_id: str, rule: str, message: str) -> InvariantViolation:
    return InvariantViolation(
        [Violation(invariant="state", rule=rule, collection=collection, entity_id=record_id, message=message)]
    )


# -----------------------------------------------------------------------------
# Sequencing and lookups
# -----------------------------------------------------------------------------


def last_event_date(unit: UnitOfWork, resident_id: str) -> date | None:
    events = unit.scan(LifeEventRecord.collection, resident_id=resident_id)
    return max((e.change_date for e in events), default=None)  # type: ignore[attr-defined]


def ensure_in_sequence(ctx: EventContext, resident: Resident) -> None:
    """
    Reject an effective date earlier than the resident's known history.

    Raises:
        SequenceError: the date precedes the residency start or the change
            date of the resident's latest life event
    """
    if resident.id in ctx.sequenced:
        return
    if ctx.day < resident.residency.start:
        raise SequenceError(resident.id, ctx.day, resident.residency.start)
    last = last_event_date(ctx.unit, resident.id)
    if last is not None and ctx.day < last:
        raise SequenceError(resident.id, ctx.day, last)
    ctx.sequenced.add(resident.id)


def current(ctx: EventContext, resident_id: str) -> Resident:
    return ctx.unit.require(Resident.collection, resident_id)  # type: ignore[return-value]


def active_resident(ctx: EventContext, resident_id: str | None) -> Resident:
    resident = ctx.unit.require(Resident.collection, resident_id)
    assert isinstance(resident, Resident)
    ensure_in_sequence(ctx, resident)
    if not resident.is_active:
        raise state_error(
            Resident.collection,
            resident.id,
            "event.requires_active_residency",
            f"residency ended on {resident.residency.end}",
        )
    return resident


def active_household(ctx: EventContext, ref: str | None, field_name: str = "household_id") -> Household:
    if not ref:
        raise FormatError(field_name, "is required")
    household = ctx.unit.require(Household.collection, ctx.aliases.get(ref, ref))
    assert isinstance(household, Household)
    if not household.period.is_open:
        raise state_error(
            Household.collection,
            household.id,
            "event.requires_active_household",
            f"household dissolved on {household.period.end}",
        )
    return household


def record_event(
    ctx: EventContext,
    resident_id: str,
    *,
    prior_address_id: str | None = None,
    new_address_id: str | None = None,
    **detail: object,
) -> LifeEventRecord:
    event = LifeEventRecord(
        id=new_id(LifeEventRecord.id_prefix),
        event_type=ctx.request.event_type.value,
        resident_id=resident_id,
        change_date=ctx.day,
        notification_date=ctx.notification_date,
        processing_date=ctx.processing_date,
        application_id=ctx.application_id,
        prior_address_id=prior_address_id,
        new_address_id=new_address_id,
        detail={k: v for k, v in detail.items() if v is not None},
    )
    ctx.unit.put(event, valid_from=ctx.day)
    ctx.life_events.append(event)
    return event


# -----------------------------------------------------------------------------
# Household composition
# -----------------------------------------------------------------------------


def start_membership(ctx: EventContext, resident_id: str, household: Household, role: Role) -> Membership:
    """Open a membership from the event date, ending the resident's current one."""
    close_open_memberships(ctx.unit, resident_id, ctx.day)
    membership = Membership(
        id=new_id(Membership.id_prefix),
        resident_id=resident_id,
        household_id=household.id,
        role=role,
        period=Period(ctx.day),
    )
    ctx.unit.put(membership, valid_from=ctx.day)
    resident = current(ctx, resident_id)
    if resident.household_id != household.id:
        ctx.unit.put(replace(resident, household_id=household.id), valid_from=ctx.day)
    return membership


def end_membership(ctx: EventContext, resident_id: str, household_id: str | None = None) -> Membership:
    resident = current(ctx, resident_id)
    target = ctx.aliases.get(household_id, household_id) if household_id else resident.household_id
    closed = close_open_memberships(ctx.unit, resident_id, ctx.day, household_id=target) if target else []
    if not closed:
        raise NotFound(Membership.collection, f"{resident_id}@{target}")
    resident = current(ctx, resident_id)
    if resident.household_id == target:
        ctx.unit.put(replace(resident, household_id=None), valid_from=ctx.day)
    return closed[0]


def change_role(ctx: EventContext, resident_id: str, role: Role, household_id: str | None, field_name: str) -> Membership:
    """A role change ends the open membership and starts a new one in the same household."""
    resident = current(ctx, resident_id)
    household = active_household(ctx, household_id or resident.household_id, field_name)
    open_memberships = ctx.unit.scan(
        Membership.collection,
        lambda r: r.period.is_open,  # type: ignore[attr-defined]
        resident_id=resident_id,
        household_id=household.id,
    )
    if not open_memberships:
        raise NotFound(Membership.collection, f"{resident_id}@{household.id}")
    if open_memberships[0].role == role:  # type: ignore[attr-defined]
        raise FormatError(field_name.replace("household_id", "role"), f"resident already has role {role.value}")
    return start_membership(ctx, resident_id, household, role)


def establish_household(ctx: EventContext, fields: Payload, default_address_id: str | None) -> Household:
    address_id = default_address_id
    if "address" in fields:
        address_id = resolve_address(
            ctx.unit, fields.raw("address"), valid_from=ctx.day, field=fields.path("address")
        ).id
    household = Household(
        id=new_id(Household.id_prefix),
        household_number=fields.get_str("household_number") or "",
        address_id=address_id,
        period=Period(ctx.day),
    )
    ctx.unit.put(household, valid_from=ctx.day)
    ctx.aliases[NEW_HOUSEHOLD] = household.id
    return household


def dissolve_household(ctx: EventContext, ref: str) -> list[str]:
    """Close a household and every open membership in it. Returns the former members."""
    household = active_household(ctx, ref, "dissolve_household")
    ensure_household_in_sequence(ctx.unit, household, ctx.day)
    members: list[str] = []
    for m in ctx.unit.scan(Membership.collection, lambda r: r.period.is_open, household_id=household.id):  # type: ignore[attr-defined]
        resident = current(ctx, m.resident_id)  # type: ignore[attr-defined]
        ensure_in_sequence(ctx, resident)
        ctx.unit.put(replace(m, period=m.period.close(ctx.day)), valid_from=ctx.day)  # type: ignore[arg-type, attr-defined]
        if resident.household_id == household.id:
            ctx.unit.put(replace(resident, household_id=None), valid_from=ctx.day)
        members.append(resident.id)
    ctx.unit.put(replace(household, period=household.period.close(ctx.day)), valid_from=ctx.day)
    return members


def apply_household_changes(ctx: EventContext, default_address_id: str | None = None) -> list[str]:
    """
    Apply the payload's household edits.

    Returns:
        Ids of the residents whose membership changed, in first-touched order
    """
    p = ctx.payload
    touched: list[str] = []

    fields = p.get_obj("new_household", required=False)
    if fields is not None:
        establish_household(ctx, fields, default_address_id)

    dissolve = p.get_str("dissolve_household", required=False)
    if dissolve:
        touched = dissolve_household(ctx, dissolve)

    for i, raw in enumerate(p.get_list("memberships")):
        edit = Payload(raw, p.path(f"memberships[{i}]"))
        action = edit.get_str("action")
        resident = active_resident(ctx, edit.get_str("resident_id"))
        if action == "start":
            household = active_household(ctx, edit.get_str("household_id"), edit.path("household_id"))
            start_membership(ctx, resident.id, household, edit.get_role("role"))
        elif action == "end":
            end_membership(ctx, resident.id, edit.get_str("household_id", required=False))
        elif action == "role":
            change_role(
                ctx,
                resident.id,
                edit.get_role("role"),
                edit.get_str("household_id", required=False),
                edit.path("household_id"),
            )
        else:
            raise FormatError(edit.path("action"), "expected start, end or role")
        if resident.id not in touched:
            touched.append(resident.id)
    return touched


def _record_household_events(ctx: EventContext, touched: list[str], skip: list[str]) -> None:
    for resident_id in touched:
        if resident_id not in skip:
            record_event(ctx, resident_id, reason="household")


# -----------------------------------------------------------------------------
# Residency events
# -----------------------------------------------------------------------------


def _new_resident(ctx: EventContext, person: Payload, *, birth_date: date, address_id: str | None) -> Resident:
    resident = Resident(
        id=new_id(Resident.id_prefix),
        personal_number=person.get_str("personal_number") or "",
        registry_code=person.get_str("registry_code") or "",
        name=person.get_str("name") or "",
        birth_date=birth_date,
        gender=person.get_str("gender", required=False, default="0") or "0",
        residency=Period(ctx.day),
        address_id=address_id,
    )
    ctx.resolver.register(resident, ctx.unit)
    ctx.unit.put(resident, valid_from=ctx.day)
    return resident


def handle_birth(ctx: EventContext) -> None:
    p = ctx.payload
    person = p.get_obj("resident")
    assert person is not None
    household = active_household(ctx, p.get_str("household_id"))
    role = p.get_role("role", default=Role.CHILD)
    address_id = household.address_id
    if "address" in p:
        address_id = resolve_address(ctx.unit, p.raw("address"), valid_from=ctx.day).id

    resident = _new_resident(ctx, person, birth_date=ctx.day, address_id=address_id)
    start_membership(ctx, resident.id, household, role)
    record_event(ctx, resident.id, new_address_id=address_id, household_id=household.id)


def handle_transfer_in(ctx: EventContext) -> None:
    """Register an arrival, either a new person or the re-admission of a former resident."""
    p = ctx.payload
    address = resolve_address(ctx.unit, p.raw("address", required=True), valid_from=ctx.day)
    prior_address_id = None
    if "prior_address" in p:
        prior_address_id = resolve_address(
            ctx.unit, p.raw("prior_address"), valid_from=ctx.day, field="prior_address"
        ).id

    if "resident_id" in p:
        resident = current(ctx, p.get_str("resident_id") or "")
        ensure_in_sequence(ctx, resident)
        if resident.is_active:
            raise state_error(Resident.collection, resident.id, "transfer_in.not_resident", "resident is already registered")
        history = ctx.unit.scan(LifeEventRecord.collection, resident_id=resident.id)
        if any(e.event_type == EventType.DEATH.value for e in history):  # type: ignore[attr-defined]
            raise state_error(Resident.collection, resident.id, "transfer_in.deceased", "resident is recorded as deceased")
        resident = replace(resident, residency=Period(ctx.day), address_id=address.id, household_id=None)
        ctx.unit.put(resident, valid_from=ctx.day)
    else:
        person = p.get_obj("resident")
        assert person is not None
        birth_date = person.get_date("birth_date")
        assert birth_date is not None
        resident = _new_resident(ctx, person, birth_date=birth_date, address_id=address.id)

    fields = p.get_obj("new_household", required=False)
    if fields is not None:
        household = establish_household(ctx, fields, address.id)
        role = p.get_role("role", default=Role.HEAD)
    else:
        household = active_household(ctx, p.get_str("household_id"))
        role = p.get_role("role")
    start_membership(ctx, resident.id, household, role)
    record_event(
        ctx,
        resident.id,
        prior_address_id=prior_address_id,
        new_address_id=address.id,
        household_id=household.id,
    )


def handle_move(ctx: EventContext) -> None:
    """Address change within the municipality for one or more residents."""
    p = ctx.payload
    residents = [active_resident(ctx, rid) for rid in p.ids("resident_id", "resident_ids")]
    address = resolve_address(ctx.unit, p.raw("address", required=True), valid_from=ctx.day)
    for resident in residents:
        if resident.address_id == address.id:
            raise FormatError("address", f"resident {resident.id} is already registered at this address")
        ctx.unit.put(replace(current(ctx, resident.id), address_id=address.id), valid_from=ctx.day)

    household_id = p.get_str("household_id", required=False)
    if household_id:
        household = active_household(ctx, household_id)
        ensure_household_in_sequence(ctx.unit, household, ctx.day)
        ctx.unit.put(replace(household, address_id=address.id), valid_from=ctx.day)

    touched = apply_household_changes(ctx, address.id)
    for resident in residents:
        record_event(ctx, resident.id, prior_address_id=resident.address_id, new_address_id=address.id)
    _record_household_events(ctx, touched, [r.id for r in residents])


def _end_residency(ctx: EventContext, residents: list[Resident], new_address_id: str | None, **detail: object) -> None:
    touched = apply_household_changes(ctx)
    for resident in residents:
        latest = current(ctx, resident.id)
        ctx.unit.put(replace(latest, residency=latest.residency.close(ctx.day)), valid_from=ctx.day)
        record_event(ctx, resident.id, prior_address_id=resident.address_id, new_address_id=new_address_id, **detail)
    _record_household_events(ctx, touched, [r.id for r in residents])


def handle_transfer_out(ctx: EventContext) -> None:
    p = ctx.payload
    residents = [active_resident(ctx, rid) for rid in p.ids("resident_id", "resident_ids")]
    destination_id = None
    if "destination" in p:
        destination_id = resolve_address(
            ctx.unit, p.raw("destination"), valid_from=ctx.day, field="destination"
        ).id
    _end_residency(ctx, residents, destination_id)


def handle_death(ctx: EventContext) -> None:
    resident = active_resident(ctx, ctx.payload.get_str("resident_id"))
    _end_residency(ctx, [resident], None)


# -----------------------------------------------------------------------------
# Civil status
# -----------------------------------------------------------------------------


def _partners(ctx: EventContext) -> tuple[Resident, Resident]:
    ids = ctx.payload.ids("resident_id", "resident_ids")
    if len(ids) != 2:
        raise FormatError("resident_ids", "expected two distinct residents")
    first, second = (active_resident(ctx, rid) for rid in ids)
    return first, second


def _partner_change(ctx: EventContext) -> None:
    first, second = _partners(ctx)
    default_address = ctx.payload.raw("address")
    address_id = first.address_id
    if default_address is not None:
        address_id = resolve_address(ctx.unit, default_address, valid_from=ctx.day).id
    touched = apply_household_changes(ctx, address_id)
    record_event(ctx, first.id, partner_id=second.id)
    record_event(ctx, second.id, partner_id=first.id)
    _record_household_events(ctx, touched, [first.id, second.id])


def handle_marriage(ctx: EventContext) -> None:
    _partner_change(ctx)


def handle_divorce(ctx: EventContext) -> None:
    _partner_change(ctx)


def handle_household_change(ctx: EventContext) -> None:
    p = ctx.payload
    address_id = None
    if "address" in p:
        address_id = resolve_address(ctx.unit, p.raw("address"), valid_from=ctx.day).id
    touched = apply_household_changes(ctx, address_id)
    if not touched:
        raise FormatError("memberships", "no household changes given")
    for resident_id in touched:
        record_event(ctx, resident_id)


# -----------------------------------------------------------------------------
# Seal registrations and identity cards
# -----------------------------------------------------------------------------


def _cancel_all(ctx: EventContext, collection: str, resident_id: str, reason: str) -> list[str]:
    cancelled: list[str] = []
    for r in ctx.unit.scan(collection, lambda r: r.status != RegistrationStatus.CANCELLED, resident_id=resident_id):  # type: ignore[attr-defined]
        ctx.unit.put(
            replace(r, status=RegistrationStatus.CANCELLED, cancellation_date=ctx.day, cancellation_reason=reason),  # type: ignore[arg-type]
            valid_from=ctx.day,
        )
        cancelled.append(r.id)  # type: ignore[attr-defined]
    return cancelled


def handle_seal_register(ctx: EventContext) -> None:
    """Register a seal. Any registration still in force is superseded on the same date."""
    p = ctx.payload
    resident = active_resident(ctx, p.get_str("resident_id"))
    seal_number = p.get_str("seal_number") or ""
    superseded = _cancel_all(ctx, SealRegistration.collection, resident.id, SUPERSEDED)
    registration = SealRegistration(
        id=new_id(SealRegistration.id_prefix),
        resident_id=resident.id,
        seal_number=seal_number,
        registration_date=ctx.day,
    )
    ctx.unit.put(registration, valid_from=ctx.day)
    record_event(ctx, resident.id, seal_registration_id=registration.id, superseded=superseded or None)


def _registration(ctx: EventContext, collection: str, field_name: str) -> tuple[SealRegistration | IdentityCard, Resident]:
    record = ctx.unit.require(collection, ctx.payload.get_str(field_name))
    assert isinstance(record, (SealRegistration, IdentityCard))
    return record, active_resident(ctx, record.resident_id)


def handle_seal_suspend(ctx: EventContext) -> None:
    registration, resident = _registration(ctx, SealRegistration.collection, "registration_id")
    if registration.status != RegistrationStatus.ACTIVE:
        raise state_error(
            SealRegistration.collection,
            registration.id,
            "seal_registration.suspend_requires_active",
            f"registration is {registration.status.value}",
        )
    ctx.unit.put(replace(registration, status=RegistrationStatus.SUSPENDED, suspended_date=ctx.day), valid_from=ctx.day)
    record_event(ctx, resident.id, seal_registration_id=registration.id)


def _cancel_one(ctx: EventContext, collection: str, field_name: str, rule: str) -> None:
    record, resident = _registration(ctx, collection, field_name)
    if record.status == RegistrationStatus.CANCELLED:
        raise state_error(collection, record.id, rule, "already cancelled")
    reason = ctx.payload.get_str("reason", required=False, default="cancelled by application")
    ctx.unit.put(
        replace(record, status=RegistrationStatus.CANCELLED, cancellation_date=ctx.day, cancellation_reason=reason),
        valid_from=ctx.day,
    )
    record_event(ctx, resident.id, **{f"{collection}_id": record.id})


def handle_seal_cancel(ctx: EventContext) -> None:
    _cancel_one(ctx, SealRegistration.collection, "registration_id", "seal_registration.cancel_once")


def handle_card_issue(ctx: EventContext) -> None:
    """Issue an identity card. A card still in force is cancelled as reissued."""
    p = ctx.payload
    resident = active_resident(ctx, p.get_str("resident_id"))
    card_number = p.get_str("card_number") or ""
    expiration = p.get_date("expiration_date")
    assert expiration is not None
    reissued = _cancel_all(ctx, IdentityCard.collection, resident.id, REISSUED)
    card = IdentityCard(
        id=new_id(IdentityCard.id_prefix),
        resident_id=resident.id,
        card_number=card_number,
        issuance_date=ctx.day,
        expiration_date=expiration,
    )
    ctx.unit.put(card, valid_from=ctx.day)
    record_event(ctx, resident.id, identity_card_id=card.id, reissued=reissued or None)


def handle_card_cancel(ctx: EventContext) -> None:
    _cancel_one(ctx, IdentityCard.collection, "card_id", "identity_card.cancel_once")


# -----------------------------------------------------------------------------
# Support measures
# -----------------------------------------------------------------------------


def handle_support_start(ctx: EventContext) -> None:
    p = ctx.payload
    resident = active_resident(ctx, p.get_str("resident_id"))
    measure = SupportMeasure(
        id=new_id(SupportMeasure.id_prefix),
        resident_id=resident.id,
        measure_type=(p.get_str("measure_type") or "").lower(),
        period=Period(ctx.day),
    )
    ctx.unit.put(measure, valid_from=ctx.day)
    sync_support_flags(ctx.unit, resident.id, ctx.day)
    record_event(ctx, resident.id, support_measure_id=measure.id, measure_type=measure.measure_type)


def handle_support_end(ctx: EventContext) -> None:
    measure = ctx.unit.require(SupportMeasure.collection, ctx.payload.get_str("measure_id"))
    assert isinstance(measure, SupportMeasure)
    resident = active_resident(ctx, measure.resident_id)
    if not measure.period.is_open:
        raise state_error(SupportMeasure.collection, measure.id, "support_measure.end_once", "measure already ended")
    ctx.unit.put(replace(measure, period=measure.period.close(ctx.day)), valid_from=ctx.day)
    sync_support_flags(ctx.unit, resident.id, ctx.day)
    record_event(ctx, resident.id, support_measure_id=measure.id, measure_type=measure.measure_type)


HANDLERS: dict[EventType, Handler] = {
    EventType.BIRTH: handle_birth,
    EventType.TRANSFER_IN: handle_transfer_in,
    EventType.MOVE: handle_move,
    EventType.TRANSFER_OUT: handle_transfer_out,
    EventType.DEATH: handle_death,
    EventType.MARRIAGE: handle_marriage,
    EventType.DIVORCE: handle_divorce,
    EventType.HOUSEHOLD_CHANGE: handle_household_change,
    EventType.SEAL_REGISTER: handle_seal_register,
    EventType.SEAL_SUSPEND: handle_seal_suspend,
    EventType.SEAL_CANCEL: handle_seal_cancel,
    EventType.CARD_ISSUE: handle_card_issue,
    EventType.CARD_CANCEL: handle_card_cancel,
    EventType.SUPPORT_START: handle_support_start,
    EventType.SUPPORT_END: handle_support_end,
}
