import dataclasses

import pytest

from token_gateway.tenant import Agency, Location, tenant_columns, tenant_from_ids, user_type_candidates


def test_tenant_kinds():
    assert Location("loc_1").kind == "location"
    assert Agency("comp_1").kind == "agency"
    assert Location("x") != Agency("x")


@pytest.mark.parametrize("cls", [Location, Agency])
def test_empty_id_rejected(cls):
    with pytest.raises(ValueError):
        cls("")


def test_tenant_is_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        Location("loc_1").id = "loc_2"


def test_tenant_from_ids():
    assert tenant_from_ids("loc_1", None) == Location("loc_1")
    assert tenant_from_ids(None, "comp_1") == Agency("comp_1")
    assert tenant_from_ids("loc_1", "comp_1") == Location("loc_1")
    assert tenant_from_ids(None, None) is None
    assert tenant_from_ids("", "") is None


def test_tenant_columns():
    assert tenant_columns(Location("loc_1")) == {"location_id": "loc_1", "agency_id": None}
    assert tenant_columns(Agency("comp_1")) == {"location_id": None, "agency_id": "comp_1"}


@pytest.mark.parametrize(
    "location_hint,agency_hint,expected",
    [
        (None, None, ["Location", "Company"]),
        ("loc_1", None, ["Location", "Company"]),
        (None, "comp_1", ["Company", "Location"]),
        ("loc_1", "comp_1", ["Location", "Company"]),
    ],
)
def test_user_type_candidates(location_hint, agency_hint, expected):
    assert user_type_candidates(location_hint, agency_hint) == expected
