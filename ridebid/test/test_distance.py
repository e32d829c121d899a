import asyncio
import json

from fastapi.testclient import TestClient

from ridebid.distance import DistanceProvider, haversine_miles
from ridebid.routing_service import app as routing_app, ROAD_FACTOR

NEWARK = (40.7357, -74.1724)
MANHATTAN = (40.7831, -73.9712)


def test_haversine_is_symmetric():
    there = haversine_miles(NEWARK, MANHATTAN)
    assert 10 < there < 12
    assert there == haversine_miles(MANHATTAN, NEWARK)
    assert haversine_miles(NEWARK, NEWARK) == 0


def test_missing_coordinate_is_unknown():
    provider = DistanceProvider(base_url="")
    assert asyncio.run(provider.distance_miles(None, MANHATTAN)) is None


def test_falls_back_to_straight_line_when_routing_disabled(fake_redis):
    provider = DistanceProvider(base_url="")
    miles = asyncio.run(provider.distance_miles(NEWARK, MANHATTAN))
    assert miles == round(haversine_miles(NEWARK, MANHATTAN), 2)
    # fallback answers are not cached
    assert fake_redis.store == {}


def test_cached_distance_is_used(fake_redis):
    provider = DistanceProvider(base_url="")
    fake_redis.store[provider._cache_key(NEWARK, MANHATTAN)] = json.dumps(14.2)
    assert asyncio.run(provider.distance_miles(NEWARK, MANHATTAN)) == 14.2


def test_routing_service_distance():
    client = TestClient(routing_app)
    r = client.post("/distance", json={
        "origin_lat": NEWARK[0], "origin_lng": NEWARK[1],
        "destination_lat": MANHATTAN[0], "destination_lng": MANHATTAN[1],
    })
    assert r.status_code == 200
    assert r.json()["distance_miles"] == round(haversine_miles(NEWARK, MANHATTAN) * ROAD_FACTOR, 2)

    r = client.post("/distance", json={"origin_lat": 91, "origin_lng": 0, "destination_lat": 0, "destination_lng": 0})
    assert r.status_code == 422
