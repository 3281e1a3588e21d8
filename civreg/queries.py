"""
Read-side queries over committed state.

Every query reads one pinned snapshot, so it never mixes versions from two
commits. Household and role are derived from the membership fact table; the
resident record's household reference is only a projection of it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from .errors import NoHeadError, NotFound
from .records import (
    Address,
    Household,
    IdentityCard,
    LifeEventRecord,
    Membership,
    RegistrationStatus,
    Resident,
    Role,
    SealRegistration,
    SupportMeasure,
)
from .store import RecordStore, Snapshot


@dataclass(frozen=True)
class ResidentView:
    """A resident as of one date (or currently), with derived household and role."""

    resident: Resident
    as_of: date | None
    household_id: str | None
    role: Role | None
    address: Address | None

    @property
    def resident_id(self) -> str:
        return self.resident.id

    @property
    def residency_end(self) -> date | None:
        return self.resident.residency.end

    def to_dict(self) -> dict[str, Any]:
        data = self.resident.to_dict()
        data.update(
            {
                "as_of": self.as_of.isoformat() if self.as_of else None,
                "household_id": self.household_id,
                "role": self.role.value if self.role else None,
                "address": self.address.to_dict() if self.address else None,
            }
        )
        return data


class RegistryQueries:
    def __init__(self, store: RecordStore):
        self.store = store

    def _membership(self, snap: Snapshot, resident_id: str, as_of: date | None) -> Membership | None:
        for m in snap.scan(Membership.collection, resident_id=resident_id):
            assert isinstance(m, Membership)
            if m.period.is_empty:
                continue
            if (as_of is None and m.period.is_open) or (as_of is not None and m.period.covers(as_of)):
                return m
        return None

    def _view(self, snap: Snapshot, resident: Resident, as_of: date | None) -> ResidentView:
        membership = self._membership(snap, resident.id, as_of)
        address = snap.get(Address.collection, resident.address_id) if resident.address_id else None
        return ResidentView(
            resident=resident,
            as_of=as_of,
            household_id=membership.household_id if membership else None,
            role=membership.role if membership else None,
            address=address if isinstance(address, Address) else None,
        )

    def current_resident(self, resident_id: str) -> ResidentView:
        snap = self.store.snapshot()
        resident = snap.get(Resident.collection, resident_id)
        if not isinstance(resident, Resident):
            raise NotFound(Resident.collection, resident_id)
        return self._view(snap, resident, None)

    def resident_as_of(self, resident_id: str, as_of: date) -> ResidentView:
        """
        Resident state in force on ``as_of``.

        Raises:
            NotFound: no version of the resident was in force on that date
        """
        snap = self.store.snapshot()
        resident = snap.get(Resident.collection, resident_id, as_of=as_of)
        if not isinstance(resident, Resident):
            raise NotFound(Resident.collection, resident_id)
        return self._view(snap, resident, as_of)

    def household(self, household_id: str, as_of: date | None = None) -> Household:
        household = self.store.get(Household.collection, household_id, as_of=as_of)
        if not isinstance(household, Household):
            raise NotFound(Household.collection, household_id)
        return household

    def household_members(self, household_id: str, as_of: date | None = None) -> list[Membership]:
        self.household(household_id)
        members = []
        for m in self.store.range_scan(Membership.collection, household_id=household_id):
            assert isinstance(m, Membership)
            if m.period.is_empty:
                continue
            if (as_of is None and m.period.is_open) or (as_of is not None and m.period.covers(as_of)):
                members.append(m)
        return sorted(members, key=lambda m: (m.role != Role.HEAD, m.period.start, m.resident_id))

    def household_head(self, household_id: str, as_of: date | None = None) -> str:
        """
        Resident id of the household head on ``as_of`` (None: currently).

        Raises:
            NotFound: unknown household
            NoHeadError: no head membership covers the date
        """
        heads = [m for m in self.household_members(household_id, as_of) if m.role == Role.HEAD]
        if not heads:
            raise NoHeadError(household_id, as_of)
        return heads[0].resident_id

    def life_events(self, resident_id: str) -> list[LifeEventRecord]:
        """Life events of a resident in change-date order, commit order within a date."""
        events = [e for e in self.store.range_scan(LifeEventRecord.collection, resident_id=resident_id)]
        return sorted(events, key=lambda e: e.change_date)  # type: ignore[attr-defined, return-value]

    def seal_registration(self, registration_id: str) -> SealRegistration:
        record = self.store.get(SealRegistration.collection, registration_id)
        if not isinstance(record, SealRegistration):
            raise NotFound(SealRegistration.collection, registration_id)
        return record

    def identity_card(self, card_id: str) -> IdentityCard:
        record = self.store.get(IdentityCard.collection, card_id)
        if not isinstance(record, IdentityCard):
            raise NotFound(IdentityCard.collection, card_id)
        return record

    def active_seal(self, resident_id: str, as_of: date | None = None) -> SealRegistration | None:
        """The registration ACTIVE on ``as_of`` (default: currently ACTIVE)."""
        for reg in self.store.range_scan(SealRegistration.collection, resident_id=resident_id):
            assert isinstance(reg, SealRegistration)
            if as_of is None and reg.status == RegistrationStatus.ACTIVE:
                return reg
            if as_of is not None and reg.active_period().covers(as_of):
                return reg
        return None

    def active_card(self, resident_id: str, as_of: date | None = None) -> IdentityCard | None:
        """The card in force on ``as_of`` (default: the ACTIVE card, ignoring expiry)."""
        cards = self.store.range_scan(IdentityCard.collection, resident_id=resident_id)
        for card in cards:
            assert isinstance(card, IdentityCard)
            if as_of is None and card.status == RegistrationStatus.ACTIVE:
                return card
            if as_of is not None and card.active_period().covers(as_of):
                return card
        return None

    def support_measures(self, resident_id: str, *, open_only: bool = False) -> list[SupportMeasure]:
        measures = self.store.range_scan(SupportMeasure.collection, resident_id=resident_id)
        return [m for m in measures if not open_only or m.period.is_open]  # type: ignore[attr-defined, misc]

    def address(self, address_id: str) -> Address:
        record = self.store.get(Address.collection, address_id)
        if not isinstance(record, Address):
            raise NotFound(Address.collection, address_id)
        return record

    def resident_history(self, resident_id: str) -> list[dict[str, Any]]:
        """Every committed version of a resident, with commit sequence and effective date."""
        versions = self.store.versions(Resident.collection, resident_id)
        if not versions:
            raise NotFound(Resident.collection, resident_id)
        return [v.to_dict() | {"seq": v.seq} for v in versions]
