# tests/conftest.py

from __future__ import annotations

import pytest

from livetrack.broadcaster import Broadcaster
from livetrack.models import GeoPoint, OrderStatus, PositionSample, utc_now
from livetrack.registry import PartnerRegistry
from livetrack.service import TrackingService

# Chennai Central and a few points around it
CENTRAL = (13.0827, 80.2707)
RESTAURANT = (13.0569, 80.2797)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_sample(order_id: str, lat: float, lng: float, status: OrderStatus = OrderStatus.OUT_FOR_DELIVERY,
                partner_id: str = "p1") -> PositionSample:
    return PositionSample(order_id, lat, lng, utc_now(), partner_id, status)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> PartnerRegistry:
    return PartnerRegistry(shards=4, strict_geo_lookup=False)


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster(shards=4)


@pytest.fixture
def service(clock):
    """Service with one restaurant and two available partners, p1 closest."""
    svc = TrackingService(
        registry=PartnerRegistry(strict_geo_lookup=False),
        use_geocoding=False,
        search_radius_km=20.0,
        simulation_duration=120.0,
        tick_interval=1.0,
        clock=clock,
        threaded=False,
    )
    svc.orders.add_restaurant("r1", "Marina Biryani House", owner_id="owner-1",
                              address="Triplicane, Chennai", lat=RESTAURANT[0], lng=RESTAURANT[1])
    svc.registry.register("p1", name="Arun", is_available=True, lat=13.0600, lng=80.2800)
    svc.registry.register("p2", name="Priya", is_available=True, lat=13.1000, lng=80.2900)
    yield svc
    svc.shutdown()


@pytest.fixture
def delivery_point() -> GeoPoint:
    return GeoPoint(13.0067, 80.2206)
