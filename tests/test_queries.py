from __future__ import annotations

from datetime import date

import pytest
from helpers import OTHER_ADDRESS, Family, FixedClock, must, submit

from civreg.errors import NotFound
from civreg.records import Role
from civreg.service import Registry


def test_household_members_as_of(registry: Registry, family: Family) -> None:
    before_child = registry.household_members(family.household, date(2020, 4, 15))
    assert [m.resident_id for m in before_child] == [family.head]

    current = registry.household_members(family.household)
    assert [(m.resident_id, m.role) for m in current] == [(family.head, Role.HEAD), (family.child, Role.CHILD)]


def test_resident_as_of_follows_valid_time(registry: Registry, clock: FixedClock, family: Family) -> None:
    must(submit(registry, clock, "move", "2024-03-01", {"resident_id": family.child, "address": OTHER_ADDRESS}))

    assert registry.resident_as_of(family.child, date(2024, 2, 29)).address.town == "Chiyoda"  # type: ignore[union-attr]
    assert registry.resident_as_of(family.child, date(2024, 3, 1)).address.town == "Kanda"  # type: ignore[union-attr]
    with pytest.raises(NotFound):
        registry.resident_as_of(family.child, date(2020, 4, 30))


def test_resident_history_lists_every_version(registry: Registry, clock: FixedClock, family: Family) -> None:
    must(submit(registry, clock, "move", "2024-03-01", {"resident_id": family.child, "address": OTHER_ADDRESS}))

    history = registry.queries.resident_history(family.child)
    assert len(history) == 2
    assert history[0]["seq"] < history[1]["seq"]
    with pytest.raises(NotFound):
        registry.queries.resident_history("res_missing")


def test_life_events_ordered_by_change_date(registry: Registry, clock: FixedClock, family: Family) -> None:
    must(submit(registry, clock, "move", "2024-03-01", {"resident_id": family.head, "address": OTHER_ADDRESS}))
    must(submit(registry, clock, "seal_register", "2024-03-05", {"resident_id": family.head, "seal_number": "S7"}))

    events = registry.life_events(family.head)
    assert [e.event_type for e in events] == ["transfer_in", "move", "seal_register"]
    assert [e.change_date for e in events] == sorted(e.change_date for e in events)


def test_unknown_records_raise_not_found(registry: Registry) -> None:
    with pytest.raises(NotFound):
        registry.current_resident("res_missing")
    with pytest.raises(NotFound):
        registry.seal_registration("seal_missing")
    with pytest.raises(NotFound):
        registry.identity_card("card_missing")
    with pytest.raises(NotFound):
        registry.queries.address("adr_missing")
