import asyncio
from fastapi.testclient import TestClient
from sqlalchemy.pool import NullPool
from ridebid.main import app
import ridebid.cache as cache
import ridebid.routes as routes
from ridebid.db import make_engine, init_db
from ridebid.distance import DistanceProvider
from ridebid.locks import RideLocks
from ridebid.services import Marketplace
from ridebid.test.fakes import FakeGateway, FakeRedis


def setup_test_app(tmp_path, gateway=None):
    # file-backed sqlite so every request loop sees the same data
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))

    fake_redis = FakeRedis()
    cache.redis_client = fake_redis

    gateway = gateway or FakeGateway()
    market = Marketplace(
        engine=engine,
        payments=gateway,
        distance=DistanceProvider(base_url=""),
        locks=RideLocks(),
    )
    app.dependency_overrides[routes.get_marketplace] = lambda: market

    client = TestClient(app)
    return client, gateway, fake_redis


def teardown_function():
    app.dependency_overrides.clear()


RIDE = {
    "rider_id": 100,
    "pickup_location": "12 Elm St",
    "pickup_lat": 40.0,
    "pickup_lng": -74.0,
    "dropoff_location": "General Hospital",
    "dropoff_lat": 40.1,
    "dropoff_lng": -74.0,
    "scheduled_time": "2026-11-04T11:00:00-05:00",
    "vehicle_type": "wheelchair",
}


def test_full_flow_bid_counter_accept_pay_and_drive(tmp_path):
    client, gateway, fake_redis = setup_test_app(tmp_path)

    # create ride
    r = client.post("/v1/rides", json=RIDE)
    assert r.status_code == 201
    ride = r.json()
    ride_id = ride["id"]
    assert ride["status"] == "requested"
    assert ride["estimated_distance"] > 0
    assert ride["scheduled_time"].startswith("2026-11-04T16:00:00")

    # quote before any bid comes from distance
    r = client.get(f"/v1/rides/{ride_id}/price")
    assert r.status_code == 200
    assert r.json()["determined"] is True

    # driver bids, rider counters, driver counters
    r = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 40.0})
    assert r.status_code == 201
    bid_id = r.json()["id"]
    r = client.post(f"/v1/bids/{bid_id}/counter", json={"proposed_by": "rider", "amount": 35.0})
    assert r.status_code == 201
    assert r.json()["max_reached"] is False
    rider_counter = r.json()["bid"]["id"]
    r = client.post(f"/v1/bids/{rider_counter}/counter", json={"proposed_by": "driver", "amount": 38.0})
    final_bid = r.json()["bid"]["id"]

    r = client.get(f"/v1/bids/{final_bid}/history")
    assert [b["amount"] for b in r.json()] == [40.0, 35.0, 38.0]

    # rider accepts; payment goes through
    r = client.post(f"/v1/bids/{final_bid}/accept", json={"accepted_by": 100})
    assert r.status_code == 200
    body = r.json()
    assert body["ride"]["status"] == "paid"
    assert body["ride"]["final_price"] == 38.0
    assert body["payment_status"] == "success"
    assert len(gateway.charges) == 1

    r = client.get(f"/v1/rides/{ride_id}/bids")
    assert sorted(b["status"] for b in r.json()) == ["accepted", "rejected", "rejected"]

    # driver works through the trip
    for step in ("en_route", "arrived", "in_progress", "completed"):
        r = client.post(f"/v1/rides/{ride_id}/status", json={"status": step, "driver_id": 7})
        assert r.status_code == 200
        assert r.json()["status"] == step

    r = client.get("/v1/rides", params={"driver_id": 7})
    assert [x["id"] for x in r.json()] == [ride_id]


def test_errors_map_to_status_codes(tmp_path):
    client, gateway, _ = setup_test_app(tmp_path)

    r = client.get("/v1/rides/999")
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"

    ride_id = client.post("/v1/rides", json=RIDE).json()["id"]
    bid_id = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 40.0}).json()["id"]

    r = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 41.0})
    assert r.status_code == 422
    assert r.json()["error"] == "duplicate_bid"

    r = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 8, "amount": 0})
    assert r.status_code == 422

    gateway.has_method = False
    r = client.post(f"/v1/bids/{bid_id}/accept")
    assert r.status_code == 402
    assert r.json()["error"] == "payment_method_required"
    assert r.json()["action"] == "user_action"

    gateway.has_method = True
    client.post(f"/v1/bids/{bid_id}/accept")
    r = client.post(f"/v1/rides/{ride_id}/status", json={"status": "arrived"})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "invalid_transition"
    assert body["action"] == "refresh"
    assert body["attempted"] == "arrived"
    assert body["current"] == "paid"


def test_edit_and_cancel_endpoints(tmp_path):
    client, _, _ = setup_test_app(tmp_path)
    ride_id = client.post("/v1/rides", json=RIDE).json()["id"]
    bid_id = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 40.0}).json()["id"]
    client.post(f"/v1/bids/{bid_id}/accept")

    r = client.post(
        f"/v1/rides/{ride_id}/edits",
        json={"requested_by": 100, "proposed_data": {"special_instructions": "ring twice"}},
    )
    assert r.status_code == 201
    edit_id = r.json()["id"]
    assert client.get(f"/v1/rides/{ride_id}").json()["status"] == "edit_pending"

    r = client.post(
        f"/v1/rides/{ride_id}/edits",
        json={"requested_by": 100, "proposed_data": {"special_instructions": "knock"}},
    )
    assert r.status_code == 409

    r = client.post(f"/v1/edits/{edit_id}/respond", json={"accept": True, "responded_by": 7})
    assert r.json()["status"] == "accepted"
    ride = client.get(f"/v1/rides/{ride_id}").json()
    assert ride["status"] == "paid"
    assert ride["special_instructions"] == "ring twice"
    assert len(client.get(f"/v1/rides/{ride_id}/edits").json()) == 1

    r = client.post(f"/v1/rides/{ride_id}/cancel", json={"initiator": "driver", "reason": "vehicle issue"})
    assert r.status_code == 200
    body = r.json()
    assert body["ride"]["status"] == "cancelled"
    assert body["ride"]["cancelled_driver_id"] == 7
    assert body["fee"] == 0.0


def test_withdraw_and_pricing_settings(tmp_path):
    client, _, _ = setup_test_app(tmp_path)
    ride_id = client.post("/v1/rides", json=RIDE).json()["id"]
    bid_id = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 40.0}).json()["id"]

    r = client.delete(f"/v1/bids/{bid_id}", params={"driver_id": 8})
    assert r.status_code == 422
    r = client.delete(f"/v1/bids/{bid_id}", params={"driver_id": 7})
    assert r.status_code == 200
    assert r.json()["status"] == "withdrawn"

    r = client.put("/v1/pricing-settings", json={"surge_factor": 1.5})
    assert r.status_code == 200
    assert r.json()["surge_factor"] == 1.5
    assert client.get("/v1/pricing-settings").json()["surge_factor"] == 1.5

    r = client.put("/v1/pricing-settings", json={"not_a_rate": 1})
    assert r.status_code == 422


def test_idempotency_key_replays_ride(tmp_path):
    client, _, _ = setup_test_app(tmp_path)
    headers = {"Idempotency-Key": "ride-req-1"}
    first = client.post("/v1/rides", json=RIDE, headers=headers).json()
    second = client.post("/v1/rides", json=RIDE, headers=headers).json()
    assert first["id"] == second["id"]
    assert len(client.get("/v1/rides").json()) == 1


def test_health(tmp_path):
    client, _, _ = setup_test_app(tmp_path)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "redis": True}


def test_driver_accepts_selected_bid(tmp_path):
    client, gateway, _ = setup_test_app(tmp_path)
    ride_id = client.post("/v1/rides", json=RIDE).json()["id"]
    bid_id = client.post(f"/v1/rides/{ride_id}/bids", json={"driver_id": 7, "amount": 40.0}).json()["id"]

    r = client.post(f"/v1/bids/{bid_id}/driver-accept", json={"driver_id": 7})
    assert r.status_code == 422

    assert client.post(f"/v1/bids/{bid_id}/select").json()["status"] == "selected"
    r = client.post(f"/v1/bids/{bid_id}/driver-accept", json={"driver_id": 8})
    assert r.status_code == 422

    r = client.post(f"/v1/bids/{bid_id}/driver-accept", json={"driver_id": 7})
    assert r.status_code == 200
    body = r.json()
    assert body["bid"]["status"] == "accepted"
    assert body["ride"]["status"] == "paid"
    assert body["ride"]["driver_id"] == 7
    assert len(gateway.charges) == 1
