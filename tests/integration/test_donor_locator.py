# pylint: disable=redefined-outer-name
import math

import pytest

from conftest import HOSPITAL_LAT, HOSPITAL_LON, make_user
from bloodbank.adapters.donor_locator import (
    EARTH_RADIUS_KM,
    GeoPoint,
    SqlAlchemyDonorLocator,
    bounding_box,
    haversine_km,
)
from bloodbank.domain import actors

HOSPITAL = GeoPoint(longitude=HOSPITAL_LON, latitude=HOSPITAL_LAT)


@pytest.fixture
def session(sqlite_session_factory):
    session = sqlite_session_factory()
    yield session
    session.close()


def donor_at(user_id, lat_offset=0.0, **overrides):
    return make_user(user_id, latitude=HOSPITAL_LAT + lat_offset, longitude=HOSPITAL_LON, **overrides)


def test_haversine_one_degree_of_latitude():
    assert haversine_km(GeoPoint(0.0, 0.0), GeoPoint(0.0, 1.0)) == pytest.approx(111.19, abs=0.01)


def test_bounding_box_contains_the_circle():
    min_lat, max_lat, min_lon, max_lon = bounding_box(HOSPITAL, 50)
    assert min_lat < HOSPITAL_LAT - 0.44 and max_lat > HOSPITAL_LAT + 0.44
    assert min_lon < HOSPITAL_LON - 0.44 and max_lon > HOSPITAL_LON + 0.44


def test_nearest_compatible_available_donors_first(session):
    session.add_all(
        [
            donor_at("far", 0.3),
            donor_at("near", 0.1),
            donor_at("here", 0.0),
            donor_at("out-of-range", 1.0),
            donor_at("wrong-type", 0.0, blood_type="AB+"),
            donor_at("busy", 0.0, is_available=False),
            donor_at("inactive", 0.0, is_active=False),
            donor_at("recipient", 0.0, role=actors.RECIPIENT),
        ]
    )
    session.commit()

    found = SqlAlchemyDonorLocator(session).find_nearby(HOSPITAL, 50000, {"O-", "O+"})

    assert [d.donor_id for d in found] == ["here", "near", "far"]
    assert found[0].distance_km == 0.0
    assert found[1].distance_km == pytest.approx(11.12, abs=0.01)


def test_limit_caps_the_result(session):
    session.add_all([donor_at(f"d-{i}", i * 0.01) for i in range(5)])
    session.commit()

    found = SqlAlchemyDonorLocator(session).find_nearby(HOSPITAL, 50000, ["O-"], limit=3)

    assert [d.donor_id for d in found] == ["d-0", "d-1", "d-2"]


def test_no_blood_types_finds_nobody(session):
    session.add(donor_at("here"))
    session.commit()
    assert SqlAlchemyDonorLocator(session).find_nearby(HOSPITAL, 50000, []) == []


def test_search_across_the_antimeridian(session):
    session.add(make_user("fiji", latitude=-17.0, longitude=-179.9))
    session.commit()

    found = SqlAlchemyDonorLocator(session).find_nearby(GeoPoint(longitude=179.9, latitude=-17.0), 50000, ["O-"])

    assert [d.donor_id for d in found] == ["fiji"]
    assert found[0].distance_km < 25


def test_excluded_donors_do_not_count_against_the_limit(session):
    session.add_all([donor_at("requester", 0.0), donor_at("d-1", 0.01), donor_at("d-2", 0.02)])
    session.commit()

    found = SqlAlchemyDonorLocator(session).find_nearby(HOSPITAL, 50000, ["O-"], limit=2, exclude_ids=["requester"])

    assert [d.donor_id for d in found] == ["d-1", "d-2"]


@pytest.mark.parametrize("latitude", [0.0, 45.0, 80.0, -60.0])
def test_bounding_box_touches_the_circle_at_its_widest_point(latitude):
    center = GeoPoint(longitude=10.0, latitude=latitude)
    _, _, min_lon, max_lon = bounding_box(center, 50)

    # the east and west extremes of the circle sit slightly poleward of the centre
    angular_radius = 50 / EARTH_RADIUS_KM
    extreme_lat = math.degrees(math.asin(math.sin(math.radians(latitude)) / math.cos(angular_radius)))

    assert haversine_km(center, GeoPoint(longitude=max_lon, latitude=extreme_lat)) == pytest.approx(50, abs=0.001)
    assert haversine_km(center, GeoPoint(longitude=min_lon, latitude=extreme_lat)) == pytest.approx(50, abs=0.001)


def test_bounding_box_over_the_pole_spans_every_longitude():
    _, max_lat, min_lon, max_lon = bounding_box(GeoPoint(longitude=0.0, latitude=89.9), 50)
    assert max_lat == 90.0
    assert (min_lon, max_lon) == (-180.0, 180.0)
