from __future__ import annotations

from dataclasses import replace
from datetime import date

import pytest

from civreg.cascade import (
    CASCADE_RULES,
    MAX_ROUNDS,
    CascadeRule,
    close_open_memberships,
    ensure_household_in_sequence,
    membership_closed,
    residency_ended,
    run_cascades,
)
from civreg.errors import SequenceError
from civreg.records import (
    GUARDIANSHIP,
    RESIDENCY_TERMINATED,
    Household,
    IdentityCard,
    Membership,
    Period,
    RegistrationStatus,
    Resident,
    Role,
    SealRegistration,
    SupportMeasure,
)
from civreg.store import Mutation, RecordStore

START = date(2020, 4, 1)
END = date(2024, 6, 1)


def _resident(rid: str, n: int, **kwargs) -> Resident:
    fields = dict(
        id=rid,
        personal_number=f"{n:012d}",
        registry_code=f"{n:011d}",
        name=f"Resident {n}",
        birth_date=date(1980, 1, 1),
        gender="1",
        residency=Period(START),
        household_id="hh_1",
    )
    fields.update(kwargs)
    return Resident(**fields)


@pytest.fixture
def store() -> RecordStore:
    """res_1 heads hh_1 alone, holding a seal, a card and a guardianship measure."""
    store = RecordStore()
    unit = store.begin()
    unit.put(_resident("res_1", 1, protective_measure=True, guardianship=True), valid_from=START)
    unit.put(Household("hh_1", "H-0001", None, Period(START)), valid_from=START)
    unit.put(Membership("mem_1", "res_1", "hh_1", Role.HEAD, Period(START)), valid_from=START)
    unit.put(SealRegistration("seal_1", "res_1", "S100", date(2021, 1, 10)), valid_from=date(2021, 1, 10))
    unit.put(IdentityCard("card_1", "res_1", "C-1", date(2021, 2, 1), date(2031, 2, 1)), valid_from=date(2021, 2, 1))
    unit.put(SupportMeasure("sup_1", "res_1", GUARDIANSHIP, Period(date(2022, 1, 1))), valid_from=date(2022, 1, 1))
    store.commit_unit(unit)
    return store


def _end_residency(store: RecordStore):
    unit = store.begin()
    resident = unit.require("resident", "res_1")
    unit.put(replace(resident, residency=resident.residency.close(END)), valid_from=END)  # type: ignore[arg-type, attr-defined]
    return unit


def test_conditions() -> None:
    open_resident = _resident("res_1", 1)
    closed_resident = replace(open_resident, residency=open_resident.residency.close(END))
    assert residency_ended(Mutation("resident", "res_1", open_resident, closed_resident, END))
    assert not residency_ended(Mutation("resident", "res_1", closed_resident, closed_resident, END))
    assert not residency_ended(Mutation("resident", "res_1", None, open_resident, START))

    open_membership = Membership("mem_1", "res_1", "hh_1", Role.HEAD, Period(START))
    closed_membership = replace(open_membership, period=open_membership.period.close(END))
    assert membership_closed(Mutation("membership", "mem_1", open_membership, closed_membership, END))
    assert not membership_closed(Mutation("membership", "mem_1", None, open_membership, START))


def test_residency_end_cascades_to_every_dependent(store: RecordStore) -> None:
    unit = _end_residency(store)
    fired = run_cascades(unit)

    assert fired == [
        "residency_end.cancel_seal",
        "residency_end.cancel_card",
        "residency_end.end_support",
        "residency_end.end_memberships",
        "membership_end.dissolve_empty_household",
    ]

    seal = unit.require("seal_registration", "seal_1")
    assert seal.status == RegistrationStatus.CANCELLED  # type: ignore[attr-defined]
    assert seal.cancellation_date == END  # type: ignore[attr-defined]
    assert seal.cancellation_reason == RESIDENCY_TERMINATED  # type: ignore[attr-defined]

    card = unit.require("identity_card", "card_1")
    assert card.status == RegistrationStatus.CANCELLED  # type: ignore[attr-defined]

    resident = unit.require("resident", "res_1")
    assert resident.protective_measure is False  # type: ignore[attr-defined]
    assert resident.guardianship is False  # type: ignore[attr-defined]
    assert unit.require("support_measure", "sup_1").period.end == END  # type: ignore[attr-defined]

    assert unit.require("membership", "mem_1").period.end == END  # type: ignore[attr-defined]
    assert unit.require("household", "hh_1").period.end == END  # type: ignore[attr-defined]

    # Nothing reaches the store until commit.
    assert store.get("seal_registration", "seal_1").status == RegistrationStatus.ACTIVE  # type: ignore[union-attr]


def test_cancelled_registrations_are_left_alone(store: RecordStore) -> None:
    unit = store.begin()
    seal = unit.require("seal_registration", "seal_1")
    unit.put(
        replace(
            seal,  # type: ignore[arg-type]
            status=RegistrationStatus.CANCELLED,
            cancellation_date=date(2023, 1, 1),
            cancellation_reason="cancelled by application",
        ),
        valid_from=date(2023, 1, 1),
    )
    store.commit_unit(unit)

    unit = _end_residency(store)
    run_cascades(unit)
    seal = unit.require("seal_registration", "seal_1")
    assert seal.cancellation_date == date(2023, 1, 1)  # type: ignore[attr-defined]
    assert seal.cancellation_reason == "cancelled by application"  # type: ignore[attr-defined]


def test_household_with_remaining_members_is_kept(store: RecordStore) -> None:
    unit = store.begin()
    unit.put(_resident("res_2", 2), valid_from=START)
    unit.put(Membership("mem_2", "res_2", "hh_1", Role.CHILD, Period(START)), valid_from=START)
    store.commit_unit(unit)

    unit = store.begin()
    close_open_memberships(unit, "res_2", END)
    fired = run_cascades(unit)

    assert fired == ["membership_end.dissolve_empty_household"]
    assert unit.require("household", "hh_1").period.is_open  # type: ignore[attr-defined]


def test_run_cascades_from_journal_offset(store: RecordStore) -> None:
    unit = _end_residency(store)
    assert run_cascades(unit, start=len(unit.journal)) == []


def test_runaway_cascade_is_stopped(store: RecordStore) -> None:
    def rename(unit, m):
        unit.put(replace(m.after, name=m.after.name + "!"), valid_from=m.valid_from)

    loop = CascadeRule(id="loop", trigger="resident", condition=lambda m: True, action=rename)
    unit = _end_residency(store)
    with pytest.raises(RuntimeError, match=str(MAX_ROUNDS)):
        run_cascades(unit, (loop,))


def test_default_table_covers_residency_and_membership() -> None:
    assert {r.trigger for r in CASCADE_RULES} == {"resident", "membership"}
    assert len({r.id for r in CASCADE_RULES}) == len(CASCADE_RULES)


def test_dissolution_before_household_history_is_rejected(store: RecordStore) -> None:
    later = date(2024, 7, 1)
    unit = store.begin()
    household = unit.require("household", "hh_1")
    unit.put(replace(household, address_id="adr_2"), valid_from=later)  # type: ignore[arg-type]
    store.commit_unit(unit)

    unit = _end_residency(store)
    with pytest.raises(SequenceError) as excinfo:
        run_cascades(unit)
    assert excinfo.value.collection == "household"
    assert excinfo.value.last_known == later


def test_household_write_on_latest_date_is_in_sequence(store: RecordStore) -> None:
    unit = store.begin()
    household = unit.require("household", "hh_1")
    ensure_household_in_sequence(unit, household, START)  # type: ignore[arg-type]
    with pytest.raises(SequenceError):
        ensure_household_in_sequence(unit, household, date(2019, 1, 1))  # type: ignore[arg-type]
