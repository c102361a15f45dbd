# tests/test_tracking.py

from livetrack.models import GeoPoint

from conftest import make_sample


def test_unknown_order_has_no_snapshot(service):
    assert service.get_snapshot("000000") is None
    assert service.get_snapshot("d" * 32) is None


def test_snapshot_before_any_position(service):
    order = service.place_order("r1", customer_name="Kavya", delivery_latlng=(13.0, 80.2))
    snapshot = service.get_snapshot(order.code)

    assert snapshot.position is None
    body = snapshot.to_dict()
    assert body["location"] is None
    assert body["order"]["orderId"] == order.code
    assert body["order"]["status"] == "confirmed"
    assert body["restaurant"]["name"] == "Marina Biryani House"
    assert body["driver"]["id"] == "p1"


def test_snapshot_by_code_and_by_id_agree(service):
    order = service.place_order("r1", delivery_latlng=(13.0, 80.2))
    service.broadcaster.publish(order.order_id, make_sample(order.order_id, 13.03, 80.24))

    by_code = service.get_snapshot(order.code)
    by_id = service.get_snapshot(order.order_id)
    assert by_code == by_id
    assert by_code.to_dict()["location"]["lat"] == 13.03
    assert by_code.to_dict()["location"]["driverId"] == "p1"
    assert by_code.to_dict()["location"]["updatedAt"].endswith("Z")


def test_snapshot_of_unassigned_order(service):
    service.registry.set_availability("p1", False)
    service.registry.set_availability("p2", False)
    order = service.place_order("r1", delivery_latlng=(13.0, 80.2))

    body = service.get_snapshot(order.code).to_dict()
    assert body["driver"] is None
    assert body["order"]["status"] == "pending"
    assert body["order"]["deliveryLatLng"] == GeoPoint(13.0, 80.2).to_dict()
