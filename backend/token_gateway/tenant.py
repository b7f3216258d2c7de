"""Tenant identity: an installation belongs to a Location or an Agency, never both."""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Location:
    id: str
    kind = "location"

    def __post_init__(self):
        if not self.id:
            raise ValueError("location id must be non-empty")


@dataclass(frozen=True)
class Agency:
    id: str
    kind = "agency"

    def __post_init__(self):
        if not self.id:
            raise ValueError("agency id must be non-empty")


Tenant = Union[Location, Agency]


def tenant_from_ids(location_id: Optional[str], agency_id: Optional[str]) -> Optional[Tenant]:
    """Build a Tenant from a pair of nullable columns/claims.

    A location wins when both are given: a location-scoped token still
    reports the company it belongs to.
    """
    if location_id:
        return Location(str(location_id))
    if agency_id:
        return Agency(str(agency_id))
    return None


def tenant_columns(tenant: Tenant) -> dict:
    """Map a Tenant onto the (location_id, agency_id) column pair."""
    if isinstance(tenant, Location):
        return {"location_id": tenant.id, "agency_id": None}
    return {"location_id": None, "agency_id": tenant.id}


def user_type_candidates(location_hint: Optional[str], agency_hint: Optional[str]) -> list[str]:
    """Ordered `user_type` values to try on the authorization-code exchange."""
    if agency_hint and not location_hint:
        return ["Company", "Location"]
    return ["Location", "Company"]
