"""
Cascade rules.

A cascade is a (trigger, condition, action) row: when a mutation of the
trigger collection satisfying the condition lands in a unit of work, the
action stages further mutations in the same unit. Cascades therefore commit
or abort together with the change that caused them.

Actions are plain functions over the unit, testable without a store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Callable

from .errors import SequenceError
from .records import (
    GUARDIANSHIP,
    RESIDENCY_TERMINATED,
    Household,
    IdentityCard,
    Membership,
    RegistrationStatus,
    Resident,
    SealRegistration,
    SupportMeasure,
)
from .store import Mutation, UnitOfWork

logger = logging.getLogger(__name__)

MAX_ROUNDS = 8

CascadeAction = Callable[[UnitOfWork, Mutation], None]


@dataclass(frozen=True)
class CascadeRule:
    id: str
    trigger: str
    condition: Callable[[Mutation], bool]
    action: CascadeAction
    description: str = ""


# -----------------------------------------------------------------------------
# Conditions
# -----------------------------------------------------------------------------


def residency_ended(m: Mutation) -> bool:
    before, after = m.before, m.after
    if not isinstance(after, Resident) or after.residency.end is None:
        return False
    return not isinstance(before, Resident) or before.residency.end is None


def membership_closed(m: Mutation) -> bool:
    before, after = m.before, m.after
    if not isinstance(after, Membership) or after.period.end is None:
        return False
    return not isinstance(before, Membership) or before.period.end is None


# -----------------------------------------------------------------------------
# Shared mutations
# -----------------------------------------------------------------------------


def close_open_memberships(unit: UnitOfWork, resident_id: str, day: date, *, household_id: str | None = None) -> list[Membership]:
    """End every open membership of a resident (optionally only in one household) on ``day``."""
    equals = {"resident_id": resident_id}
    if household_id is not None:
        equals["household_id"] = household_id
    closed: list[Membership] = []
    for m in unit.scan(Membership.collection, lambda r: r.period.is_open, **equals):  # type: ignore[attr-defined]
        ended = replace(m, period=m.period.close(day))  # type: ignore[arg-type]
        unit.put(ended, valid_from=day)
        closed.append(ended)
    return closed


def ensure_household_in_sequence(unit: UnitOfWork, household: Household, day: date) -> None:
    """
    Reject a household write dated before the household's committed history.

    Raises:
        SequenceError: ``day`` precedes the latest committed household version
    """
    history = unit.snapshot.versions(Household.collection, household.id)
    latest = max((v.valid_from for v in history), default=None)
    if latest is not None and day < latest:
        raise SequenceError(household.id, day, latest, collection=Household.collection)


def sync_support_flags(unit: UnitOfWork, resident_id: str, day: date) -> None:
    """Recompute a resident's protective-measure flags from its open support measures."""
    resident = unit.get(Resident.collection, resident_id)
    if not isinstance(resident, Resident):
        return
    measures = unit.scan(SupportMeasure.collection, lambda r: r.period.is_open, resident_id=resident_id)  # type: ignore[attr-defined]
    protective = bool(measures)
    guardianship = any(m.measure_type == GUARDIANSHIP for m in measures)  # type: ignore[attr-defined]
    if resident.protective_measure != protective or resident.guardianship != guardianship:
        unit.put(replace(resident, protective_measure=protective, guardianship=guardianship), valid_from=day)


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------


def cancel_seal_registrations(unit: UnitOfWork, m: Mutation) -> None:
    day = m.after.residency.end  # type: ignore[attr-defined]
    for reg in unit.scan(
        SealRegistration.collection,
        lambda r: r.status != RegistrationStatus.CANCELLED,  # type: ignore[attr-defined]
        resident_id=m.record_id,
    ):
        unit.put(
            replace(
                reg,  # type: ignore[arg-type]
                status=RegistrationStatus.CANCELLED,
                cancellation_date=day,
                cancellation_reason=RESIDENCY_TERMINATED,
            ),
            valid_from=day,
        )


def cancel_identity_cards(unit: UnitOfWork, m: Mutation) -> None:
    day = m.after.residency.end  # type: ignore[attr-defined]
    for card in unit.scan(
        IdentityCard.collection,
        lambda r: r.status != RegistrationStatus.CANCELLED,  # type: ignore[attr-defined]
        resident_id=m.record_id,
    ):
        unit.put(
            replace(
                card,  # type: ignore[arg-type]
                status=RegistrationStatus.CANCELLED,
                cancellation_date=day,
                cancellation_reason=RESIDENCY_TERMINATED,
            ),
            valid_from=day,
        )


def end_support_measures(unit: UnitOfWork, m: Mutation) -> None:
    day = m.after.residency.end  # type: ignore[attr-defined]
    measures = unit.scan(SupportMeasure.collection, lambda r: r.period.is_open, resident_id=m.record_id)  # type: ignore[attr-defined]
    for measure in measures:
        unit.put(replace(measure, period=measure.period.close(day)), valid_from=day)  # type: ignore[arg-type, attr-defined]
    if measures:
        sync_support_flags(unit, m.record_id, day)


def end_memberships(unit: UnitOfWork, m: Mutation) -> None:
    close_open_memberships(unit, m.record_id, m.after.residency.end)  # type: ignore[attr-defined]


def dissolve_emptied_household(unit: UnitOfWork, m: Mutation) -> None:
    membership: Membership = m.after  # type: ignore[assignment]
    household = unit.get(Household.collection, membership.household_id)
    if not isinstance(household, Household) or not household.period.is_open:
        return
    remaining = unit.scan(Membership.collection, lambda r: r.period.is_open, household_id=household.id)  # type: ignore[attr-defined]
    if remaining:
        return
    day = membership.period.end
    assert day is not None
    ensure_household_in_sequence(unit, household, day)
    unit.put(replace(household, period=household.period.close(day)), valid_from=day)


CASCADE_RULES: tuple[CascadeRule, ...] = (
    CascadeRule(
        id="residency_end.cancel_seal",
        trigger=Resident.collection,
        condition=residency_ended,
        action=cancel_seal_registrations,
        description="Residency ended: cancel any active or suspended seal registration.",
    ),
    CascadeRule(
        id="residency_end.cancel_card",
        trigger=Resident.collection,
        condition=residency_ended,
        action=cancel_identity_cards,
        description="Residency ended: cancel any active identity card.",
    ),
    CascadeRule(
        id="residency_end.end_support",
        trigger=Resident.collection,
        condition=residency_ended,
        action=end_support_measures,
        description="Residency ended: close open support measures and clear the flags.",
    ),
    CascadeRule(
        id="residency_end.end_memberships",
        trigger=Resident.collection,
        condition=residency_ended,
        action=end_memberships,
        description="Residency ended: close the resident's open household memberships.",
    ),
    CascadeRule(
        id="membership_end.dissolve_empty_household",
        trigger=Membership.collection,
        condition=membership_closed,
        action=dissolve_emptied_household,
        description="Last open membership closed: dissolve the household on the same date.",
    ),
)


def run_cascades(
    unit: UnitOfWork,
    rules: tuple[CascadeRule, ...] = CASCADE_RULES,
    *,
    start: int = 0,
) -> list[str]:
    """
    Evaluate cascade rules over the unit's journal until no rule fires.

    Mutations staged by an action are themselves evaluated in the next round.

    Args:
        unit: Unit of work holding the base mutations
        rules: Cascade table
        start: Journal index to start from

    Returns:
        Ids of the rules that fired, in firing order
    """
    fired: list[str] = []
    cursor = start
    rounds = 0
    while cursor < len(unit.journal):
        rounds += 1
        if rounds > MAX_ROUNDS:
            raise RuntimeError(f"cascade rules did not settle after {MAX_ROUNDS} rounds")
        batch = unit.journal[cursor:]
        cursor = len(unit.journal)
        for mutation in batch:
            for rule in rules:
                if rule.trigger == mutation.collection and rule.condition(mutation):
                    logger.debug("Cascade %s fired on %s", rule.id, mutation.key)
                    rule.action(unit, mutation)
                    fired.append(rule.id)
    return fired
