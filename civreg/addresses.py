"""Address deduplication: identical location fields share one Address record."""

from __future__ import annotations

from datetime import date
from typing import Any

from .errors import FormatError
from .records import Address, new_id
from .store import UnitOfWork

ADDRESS_FIELDS = ("prefecture_code", "municipality_code", "town", "block", "lot", "building", "postal_code")
REQUIRED_ADDRESS_FIELDS = ("prefecture_code", "municipality_code")


def _dedup_claim(key: tuple[str, ...]) -> str:
    return "address-key:" + "|".join(key)


def intern_address(unit: UnitOfWork, fields: dict[str, Any], *, valid_from: date, field: str = "address") -> Address:
    """Return the existing Address with these fields, or stage a new one in the unit."""
    unknown = sorted(set(fields) - set(ADDRESS_FIELDS))
    if unknown:
        raise FormatError(field, f"unknown address fields: {', '.join(unknown)}")
    for name in REQUIRED_ADDRESS_FIELDS:
        if not str(fields.get(name) or "").strip():
            raise FormatError(f"{field}.{name}", "is required")

    values = {name: str(fields.get(name) or "").strip() for name in ADDRESS_FIELDS}
    candidate = Address(id="", **values)
    key = candidate.dedup_key()
    unit.touch(_dedup_claim(key))

    for existing in unit.scan(Address.collection):
        if existing.dedup_key() == key:  # type: ignore[attr-defined]
            return existing  # type: ignore[return-value]

    address = Address(id=new_id(Address.id_prefix), **values)
    unit.put(address, valid_from=valid_from)
    unit.claim(_dedup_claim(key))
    return address


def resolve_address(unit: UnitOfWork, value: Any, *, valid_from: date, field: str = "address") -> Address:
    """Accept an address id (must exist) or a mapping of address fields."""
    if isinstance(value, str):
        return unit.require(Address.collection, value)  # type: ignore[return-value]
    if isinstance(value, dict):
        return intern_address(unit, value, valid_from=valid_from, field=field)
    raise FormatError(field, "expected an address id or an object of address fields")
