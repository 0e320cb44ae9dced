import math

import pytest

from bizdir.search import geo


def test_haversine_known_distance():
    # Toronto to Ottawa is roughly 352 km.
    assert geo.haversine_km(43.6532, -79.3832, 45.4215, -75.6972) == pytest.approx(352, abs=3)
    assert geo.haversine_km(10.0, 20.0, 10.0, 20.0) == 0


def test_bounding_box_contains_circle_extremes():
    lat, lng, radius = 43.65, -79.38, 25.0
    box = geo.bounding_box(lat, lng, radius)

    for bearing in range(0, 360, 15):
        theta = math.radians(bearing)
        angular = radius / geo.EARTH_RADIUS_KM
        lat1, lng1 = math.radians(lat), math.radians(lng)
        lat2 = math.asin(math.sin(lat1) * math.cos(angular) + math.cos(lat1) * math.sin(angular) * math.cos(theta))
        lng2 = lng1 + math.atan2(
            math.sin(theta) * math.sin(angular) * math.cos(lat1),
            math.cos(angular) - math.sin(lat1) * math.sin(lat2),
        )
        point_lat, point_lng = math.degrees(lat2), math.degrees(lng2)
        assert box.min_lat <= point_lat <= box.max_lat
        assert box.contains_lng(point_lng)


def test_bounding_box_wraps_antimeridian():
    box = geo.bounding_box(0.0, 179.95, 20.0)
    assert box.min_lng > box.max_lng
    assert box.contains_lng(-179.95)
    assert box.contains_lng(179.99)
    assert not box.contains_lng(0.0)


def test_bounding_box_near_pole_spans_all_longitudes():
    box = geo.bounding_box(89.95, 10.0, 50.0)
    assert (box.min_lng, box.max_lng) == (-180.0, 180.0)
    assert box.max_lat == 90.0


def test_bounding_box_keeps_due_north_point_at_exact_radius():
    lat, lng, radius = 43.65, -79.38, 10.0
    north_lat = lat + math.degrees(radius / geo.EARTH_RADIUS_KM)

    assert geo.haversine_km(lat, lng, north_lat, lng) == pytest.approx(radius)
    assert geo.bounding_box(lat, lng, radius).max_lat >= north_lat
    # A flat 111.32 km-per-degree box would stop short of it.
    assert lat + radius / 111.32 < north_lat
