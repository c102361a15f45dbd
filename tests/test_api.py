# tests/test_api.py

import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient
from starlette.concurrency import run_in_threadpool

from livetrack.api import KEEPALIVE_FRAME, create_app, event_stream
from livetrack.broadcaster import AsyncQueueSink
from livetrack.models import Event

from conftest import make_sample

PARTNER = {"X-Partner-Id": "p1"}
OTHER = {"X-Partner-Id": "p2"}


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as client:
        yield client


@pytest.fixture
def order(client):
    response = client.post("/orders", json={
        "restaurantId": "r1",
        "customerName": "Kavya",
        "deliveryLatLng": {"lat": 13.0, "lng": 80.2},
        "finalAmount": 450,
    })
    assert response.status_code == 201
    return response.json()


def test_place_order(order):
    assert order["assignedTo"] == "p1"
    assert order["status"] == "confirmed"
    assert len(order["orderId"]) == 6
    assert order["coordSource"] == {"restaurant": "stored", "delivery": "stored"}


def test_tracking_snapshot(client, order):
    response = client.get(f"/tracking/order/{order['orderId']}")
    assert response.status_code == 200
    body = response.json()
    assert body["order"]["id"] == order["id"]
    assert body["driver"]["id"] == "p1"
    assert body["location"] is None

    assert client.get(f"/tracking/order/{order['id']}").json()["order"]["orderId"] == order["orderId"]


def test_unknown_order_is_404(client):
    response = client.get("/tracking/order/000000")
    assert response.status_code == 404
    assert response.json() == {"message": "Order not found"}
    assert client.get("/tracking/stream/000000").status_code == 404


def test_location_update(client, order):
    response = client.post(f"/tracking/update/{order['orderId']}",
                           json={"lat": 13.05, "lng": 80.27, "status": "out_for_delivery"}, headers=PARTNER)
    assert response.status_code == 200
    assert response.json()["success"] is True

    body = client.get(f"/tracking/order/{order['orderId']}").json()
    assert body["location"]["lat"] == 13.05
    assert body["location"]["driverId"] == "p1"
    assert body["order"]["status"] == "out_for_delivery"


def test_location_update_errors(client, order):
    url = f"/tracking/update/{order['orderId']}"
    assert client.post(url, json={"lat": 13.05, "lng": 80.27}, headers=OTHER).status_code == 403
    assert client.post(url, json={"lat": 13.05, "lng": 80.27}).status_code == 403
    assert client.post(url, json={"lng": 80.27}, headers=PARTNER).status_code == 400
    assert client.post(url, json={"lat": 13.05, "lng": 80.27, "status": "lost"}, headers=PARTNER).status_code == 400
    assert client.post("/tracking/update/000000", json={"lat": 13.05, "lng": 80.27}, headers=PARTNER).status_code == 404


def test_simulation_takes_over_position(client, order):
    code = order["orderId"]
    response = client.post(f"/tracking/simulate/{code}", headers=PARTNER)
    assert response.status_code == 200
    assert response.json()["durationSeconds"] == 120

    assert client.post(f"/tracking/simulate/{code}", headers=OTHER).status_code == 403
    assert client.post(f"/tracking/update/{code}", json={"lat": 13.05, "lng": 80.27},
                       headers=PARTNER).status_code == 403

    location = client.get(f"/tracking/order/{code}").json()["location"]
    assert location["driverId"] == "simulated"

    assert client.post(f"/tracking/stop/{code}", headers=PARTNER).json()["message"] == "Simulation stopped"
    assert client.post(f"/tracking/stop/{code}", headers=PARTNER).json()["message"] == "Simulation was not running"
    assert client.post(f"/tracking/update/{code}", json={"lat": 13.05, "lng": 80.27},
                       headers=PARTNER).status_code == 200


def test_status_change(client, order):
    url = f"/orders/{order['orderId']}/status"
    response = client.patch(url, json={"status": "delivered"})
    assert response.status_code == 200
    assert response.json()["status"] == "delivered"

    assert client.patch(url, json={"status": "preparing"}).status_code == 400
    assert client.patch(url, json={"status": "bogus"}).status_code == 400
    assert client.post(f"/tracking/simulate/{order['orderId']}").status_code == 400


def test_driver_status(client, service):
    response = client.post("/tracking/driver-status", json={"isOnline": True, "lat": 13.01, "lng": 80.22},
                           headers={"X-Partner-Id": "p9"})
    assert response.json() == {"success": True, "message": "Driver online"}
    assert service.registry.get("p9").is_available

    response = client.post("/tracking/driver-status", json={"isOnline": False}, headers={"X-Partner-Id": "p9"})
    assert response.json()["message"] == "Driver offline"
    assert not service.registry.get("p9").is_available
    assert client.post("/tracking/driver-status", json={"isOnline": True}).status_code == 403


def test_partner_ranking(client):
    ranked = client.get("/partners/rank/r1").json()
    assert [c["partnerId"] for c in ranked] == ["p1", "p2"]
    assert ranked[0]["distanceKm"] < ranked[1]["distanceKm"]
    assert client.get("/partners/rank/nope").status_code == 404


def test_auto_update_routes(client, service, order):
    code = order["orderId"]
    response = client.post(f"/tracking/start-auto-update/{code}", headers=PARTNER)
    assert response.status_code == 200
    assert response.json()["message"] == "Auto-update started"

    [sample] = service.relay.tick_all()
    assert sample.source_partner_id == "p1"
    assert client.get(f"/tracking/order/{code}").json()["location"]["driverId"] == "p1"

    assert client.post(f"/tracking/start-auto-update/{code}", headers=OTHER).status_code == 403
    assert client.post(f"/tracking/start-auto-update/{code}").status_code == 403
    assert client.post("/tracking/start-auto-update/000000", headers=PARTNER).status_code == 404

    assert client.post(f"/tracking/stop-auto-update/{code}", headers=PARTNER).json()["message"] == "Auto-update stopped"
    assert client.post(f"/tracking/stop-auto-update/{code}",
                       headers=PARTNER).json()["message"] == "Auto-update was not running"


# =============================================================================
# SSE FRAMES
# =============================================================================

async def connected():
    return False


def test_event_stream_renders_until_closed():
    first = Event.location(make_sample("e" * 32, 13.0, 80.0))
    second = Event.location(make_sample("e" * 32, 13.1, 80.1))

    async def run():
        sink = AsyncQueueSink()
        sink.send(first)
        sink.send(second)
        sink.close()
        return [frame async for frame in event_stream(sink, connected, keepalive=0.01)]

    assert asyncio.run(run()) == [first.to_sse(), second.to_sse()]


def test_event_stream_keepalive_and_disconnect():
    calls = []

    async def disconnected():
        calls.append(1)
        return len(calls) > 1

    async def run():
        sink = AsyncQueueSink()
        return [frame async for frame in event_stream(sink, disconnected, keepalive=0.01)]

    assert asyncio.run(run()) == [KEEPALIVE_FRAME]


def test_open_streams_do_not_starve_requests(service):
    async def run():
        sinks = [AsyncQueueSink() for _ in range(60)]
        for sink in sinks:
            service.subscribe_admin(sink)
        streams = [
            asyncio.ensure_future(_collect(event_stream(sink, connected, keepalive=30, poll=30)))
            for sink in sinks
        ]
        await asyncio.sleep(0.05)

        started = time.monotonic()
        snapshot = await asyncio.wait_for(run_in_threadpool(service.get_snapshot, "000000"), 5)
        elapsed = time.monotonic() - started

        # Published from a worker thread, delivered to every open stream
        await asyncio.wait_for(run_in_threadpool(
            service.place_order, "r1", customer_name="Kavya", delivery_latlng=(13.0, 80.2)), 5)
        await asyncio.sleep(0.05)
        for sink in sinks:
            sink.close()
        frames = await asyncio.gather(*streams)
        return snapshot, elapsed, frames

    snapshot, elapsed, frames = asyncio.run(run())
    assert snapshot is None
    assert elapsed < 1.0
    assert len(frames) == 60
    for stream_frames in frames:
        [frame] = stream_frames
        assert json.loads(frame[len("data: "):])["type"] == "order_created"


async def _collect(frames):
    return [frame async for frame in frames]


def test_client_gone_before_first_frame_leaves_no_subscriber(service):
    app = create_app(service)
    seen = []

    async def receive():
        await asyncio.sleep(0.1)
        seen.append(service.broadcaster.subscriber_count())
        return {"type": "http.disconnect"}

    async def send(message):
        pass

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/realtime/admin",
        "raw_path": b"/realtime/admin",
        "query_string": b"",
        "root_path": "",
        "headers": [],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    asyncio.run(asyncio.wait_for(app(scope, receive, send), 5))

    assert seen and seen[0] == 1
    assert service.broadcaster.subscriber_count() == 0
