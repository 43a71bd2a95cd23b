"""Shared test fixtures: Flask client and realistic feature service payloads."""

import pytest
import responses

import main


@pytest.fixture()
def facility_feature() -> dict:
    """A single facility as the feature service returns it."""
    return {
        "attributes": {
            "FacilityName": "Evergreen Adult Family Home",
            "LicenseNumber": 751234,
            "LocationCity": "Olympia",
            "LocationZipCode": "98501",
            "TelephoneNmbr": "(360) 555-0142",
            "LocationAddress": "1200 Capitol Way S",
            "LocationState": "WA",
            "FacilityStatus": "Active",
            "FacilityPOC": "Jane Doe",
            "Longitude": -122.9007,
            "Latitude": 47.0379,
        },
        "geometry": {"x": -13681183.5, "y": 5947253.2},
    }


@pytest.fixture()
def feature_without_geometry(facility_feature: dict) -> dict:
    return {"attributes": dict(facility_feature["attributes"])}


@pytest.fixture()
def upstream():
    """Intercept every call to the feature service."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture()
def client():
    main.app.config["TESTING"] = True
    with main.app.test_client() as c:
        yield c
