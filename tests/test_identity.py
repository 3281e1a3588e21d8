from __future__ import annotations

from datetime import date

import pytest
from helpers import Family, person

from civreg.errors import ConcurrencyConflict, IdentityConflict, NotFound
from civreg.identity import IdentityResolver
from civreg.records import Household, Period, Resident
from civreg.service import Registry
from civreg.store import RecordStore


def _candidate(rid: str, n: int) -> Resident:
    fields = person(n)
    return Resident(
        id=rid,
        personal_number=fields["personal_number"],
        registry_code=fields["registry_code"],
        name=fields["name"],
        birth_date=date(1980, 1, 1),
        gender="1",
        residency=Period(date(2020, 4, 1)),
    )


def test_resolve_by_either_identifier(registry: Registry, family: Family) -> None:
    assert registry.resolve(personal_number=person(1)["personal_number"]) == family.head
    assert registry.resolve(registry_code=person(2)["registry_code"]) == family.child


def test_resolve_unknown_identifier(registry: Registry, family: Family) -> None:
    with pytest.raises(NotFound):
        registry.resolve(personal_number="999999999999")
    with pytest.raises(NotFound):
        registry.resolve(registry_code="99999999999")


def test_resolve_requires_an_identifier(registry: Registry) -> None:
    with pytest.raises(ValueError):
        registry.resolve()


def test_register_conflicts_with_pending_candidate_in_same_unit() -> None:
    store = RecordStore()
    resolver = IdentityResolver(store)
    unit = store.begin()
    first = _candidate("res_a", 3)
    resolver.register(first, unit)
    unit.put(first, valid_from=date(2020, 4, 1))

    with pytest.raises(IdentityConflict) as excinfo:
        resolver.register(_candidate("res_b", 3), unit)
    assert excinfo.value.existing_id == "res_a"
    assert excinfo.value.field == "personal_number"


def test_binding_visible_only_after_commit() -> None:
    store = RecordStore()
    resolver = IdentityResolver(store)
    unit = store.begin()
    candidate = _candidate("res_a", 3)
    resolver.register(candidate, unit)
    unit.put(candidate, valid_from=date(2020, 4, 1))
    assert resolver.lookup("personal_number", candidate.personal_number) is None

    store.commit_unit(unit)
    assert resolver.resolve(personal_number=candidate.personal_number) == "res_a"


def test_concurrent_registrations_of_same_identifier_conflict() -> None:
    store = RecordStore()
    resolver = IdentityResolver(store)
    a, b = store.begin(), store.begin()
    for unit, rid in ((a, "res_a"), (b, "res_b")):
        candidate = _candidate(rid, 4)
        resolver.register(candidate, unit)
        unit.put(candidate, valid_from=date(2020, 4, 1))

    store.commit_unit(a)
    with pytest.raises(ConcurrencyConflict) as excinfo:
        store.commit_unit(b)
    assert f"personal_number:{person(4)['personal_number']}" in excinfo.value.keys
    assert resolver.resolve(personal_number=person(4)["personal_number"]) == "res_a"


def test_index_is_rebuilt_from_persisted_units(registry: Registry, family: Family) -> None:
    assert registry.data_dir is not None
    reopened = IdentityResolver(RecordStore(registry.data_dir))
    assert reopened.resolve(personal_number=person(1)["personal_number"]) == family.head
    assert reopened.lookup("registry_code", person(2)["registry_code"]) == family.child


def test_listener_order_does_not_drop_bindings() -> None:
    store = RecordStore()
    interleaved: list[int] = []

    def commit_in_between(unit) -> None:
        # Commit another unit before the resolver hears about this one.
        if not interleaved:
            interleaved.append(unit.seq)
            store.put(Household("hh_x", "H-0099", None, Period(date(2020, 4, 1))), valid_from=date(2020, 4, 1))

    store.subscribe(commit_in_between)
    resolver = IdentityResolver(store)

    unit = store.begin()
    candidate = _candidate("res_a", 77)
    resolver.register(candidate, unit)
    unit.put(candidate, valid_from=date(2020, 4, 1))
    store.commit_unit(unit)

    assert interleaved == [1]
    assert store.sequence == 2
    assert resolver.resolve(personal_number=candidate.personal_number) == "res_a"

    duplicate = store.begin()
    with pytest.raises(IdentityConflict):
        resolver.register(_candidate("res_b", 77), duplicate)


def test_lookup_sees_commits_before_listeners_run() -> None:
    store = RecordStore()
    resolver = IdentityResolver(store)
    store._listeners.clear()

    store.put(_candidate("res_a", 5), valid_from=date(2020, 4, 1))
    assert resolver.lookup("personal_number", person(5)["personal_number"]) == "res_a"
