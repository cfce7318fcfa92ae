from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from masterdata.core.errors import CustomerValidationError


@dataclass(frozen=True)
class CustomerOwner:
    customer_id: str
    kind = "customer"


@dataclass(frozen=True)
class SupplierOwner:
    supplier_id: str
    kind = "supplier"


@dataclass(frozen=True)
class LocationOwner:
    location_id: str
    kind = "location"


# Addresses and contacts belong to exactly one of these.
OwnerRef = Union[CustomerOwner, SupplierOwner, LocationOwner]


def owner_id(owner: OwnerRef) -> str:
    if isinstance(owner, CustomerOwner):
        return owner.customer_id
    if isinstance(owner, SupplierOwner):
        return owner.supplier_id
    if isinstance(owner, LocationOwner):
        return owner.location_id
    raise TypeError(f"unsupported owner reference: {owner!r}")


def owner_to_dict(owner: OwnerRef) -> dict[str, str]:
    return {"kind": owner.kind, "id": owner_id(owner)}


def owner_from_dict(payload: dict[str, Any]) -> OwnerRef:
    kind = payload.get("kind")
    identifier = payload.get("id")
    if not identifier:
        raise CustomerValidationError("owner", "owner id is required")
    if kind == CustomerOwner.kind:
        return CustomerOwner(customer_id=str(identifier))
    if kind == SupplierOwner.kind:
        return SupplierOwner(supplier_id=str(identifier))
    if kind == LocationOwner.kind:
        return LocationOwner(location_id=str(identifier))
    raise CustomerValidationError("owner", f"unknown owner kind {kind}")
