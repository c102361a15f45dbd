# tests/test_simulator.py

import threading
import time

import pytest

from livetrack.errors import PreconditionFailed
from livetrack.models import GeoPoint, Order, OrderStatus
from livetrack.simulator import MovementSimulator, SimulationState, SimulationTask

ORDER = "b" * 32
A = GeoPoint(13.0, 80.0)
B = GeoPoint(13.1, 80.2)


class StatusBoard:
    """Stand-in for the order lifecycle."""

    def __init__(self, status=OrderStatus.CONFIRMED):
        self.status = {ORDER: status}
        self.transitions = []

    def set(self, order_id, status):
        self.transitions.append(status)
        self.status[order_id] = status

    def get(self, order_id):
        return self.status.get(order_id)


@pytest.fixture
def board():
    return StatusBoard()


@pytest.fixture
def finished():
    return []


@pytest.fixture
def simulator(broadcaster, board, clock, finished):
    sim = MovementSimulator(
        broadcaster,
        on_status=board.set,
        status_of=board.get,
        duration=120,
        tick_interval=1,
        clock=clock,
        threaded=False,
        on_finished=finished.append,
    )
    yield sim
    sim.shutdown()


def make_order(status=OrderStatus.CONFIRMED, restaurant=A, delivery=B):
    return Order(order_id=ORDER, code="654321", status=status,
                 restaurant_point=restaurant, delivery_point=delivery)


def test_first_sample_is_the_restaurant(simulator, board, broadcaster):
    task = simulator.start(make_order())

    latest = broadcaster.latest(ORDER)
    assert (latest.lat, latest.lng) == (A.lat, A.lng)
    assert latest.status is OrderStatus.OUT_FOR_DELIVERY
    assert latest.source_partner_id == "simulated"
    assert board.transitions == [OrderStatus.OUT_FOR_DELIVERY]
    assert task.state is SimulationState.RUNNING


def test_halfway_sample_is_the_midpoint(simulator, clock, broadcaster):
    simulator.start(make_order())
    clock.advance(60)
    [sample] = simulator.tick_all()
    assert sample.lat == pytest.approx(13.05)
    assert sample.lng == pytest.approx(80.1)
    assert broadcaster.latest(ORDER) == sample


def test_trip_completes_at_the_customer(simulator, clock, board, broadcaster, finished):
    task = simulator.start(make_order())
    for _ in range(120):
        clock.advance(1)
        simulator.tick_all()

    latest = broadcaster.latest(ORDER)
    assert latest.lat == pytest.approx(B.lat)
    assert latest.lng == pytest.approx(B.lng)
    assert board.get(ORDER) is OrderStatus.DELIVERED
    assert task.state is SimulationState.COMPLETED
    assert task.samples_emitted == 121
    assert simulator.get(ORDER) is None
    assert finished == [task]

    clock.advance(1)
    assert simulator.tick_all() == []


def test_late_tick_clamps_to_destination(simulator, clock, board):
    simulator.start(make_order())
    clock.advance(500)
    [sample] = simulator.tick_all()
    assert (sample.lat, sample.lng) == (pytest.approx(B.lat), pytest.approx(B.lng))
    assert board.get(ORDER) is OrderStatus.DELIVERED


def test_stop_keeps_last_status(simulator, clock, board):
    task = simulator.start(make_order())
    clock.advance(30)
    simulator.tick_all()

    assert simulator.stop(ORDER)
    assert not simulator.stop(ORDER)
    assert task.state is SimulationState.CANCELLED
    assert board.get(ORDER) is OrderStatus.OUT_FOR_DELIVERY

    clock.advance(200)
    assert simulator.tick_all() == []
    assert board.get(ORDER) is OrderStatus.OUT_FOR_DELIVERY


def test_restart_replaces_running_simulation(simulator, clock, finished):
    first = simulator.start(make_order())
    clock.advance(10)
    second = simulator.start(make_order(status=OrderStatus.OUT_FOR_DELIVERY))

    assert first.state is SimulationState.CANCELLED
    assert second.state is SimulationState.RUNNING
    assert simulator.get(ORDER) is second
    assert len(simulator) == 1
    assert finished == [first]

    clock.advance(10)
    assert len(simulator.tick_all()) == 1
    assert first.samples_emitted == 1


def test_running_order_is_not_moved_back(simulator, board):
    board.status[ORDER] = OrderStatus.OUT_FOR_DELIVERY
    simulator.start(make_order(status=OrderStatus.OUT_FOR_DELIVERY))
    assert board.transitions == []


@pytest.mark.parametrize("restaurant, delivery", [
    (None, B),
    (A, None),
    (GeoPoint(float("nan"), 80.0), B),
    (A, GeoPoint(13.0, 200.0)),
])
def test_missing_endpoints_are_rejected(simulator, board, restaurant, delivery):
    with pytest.raises(PreconditionFailed):
        simulator.start(make_order(restaurant=restaurant, delivery=delivery))
    assert len(simulator) == 0
    assert board.transitions == []


def test_task_cannot_start_twice(simulator):
    task = simulator.start(make_order())
    with pytest.raises(RuntimeError):
        task.start()


def test_threaded_trip_runs_to_completion(broadcaster, board):
    simulator = MovementSimulator(
        broadcaster,
        on_status=board.set,
        status_of=board.get,
        duration=0.3,
        tick_interval=0.05,
        clock=time.monotonic,
    )
    task = simulator.start(make_order())
    task.join(timeout=5)

    assert task.state is SimulationState.COMPLETED
    assert task.samples_emitted >= 2
    assert board.get(ORDER) is OrderStatus.DELIVERED
    latest = broadcaster.latest(ORDER)
    assert latest.lat == pytest.approx(B.lat)
    assert latest.lng == pytest.approx(B.lng)


def test_threaded_trip_can_be_cancelled(broadcaster, board):
    simulator = MovementSimulator(
        broadcaster,
        on_status=board.set,
        status_of=board.get,
        duration=60,
        tick_interval=0.01,
    )
    task = simulator.start(make_order())
    time.sleep(0.05)
    simulator.shutdown(timeout=2)

    assert task.state is SimulationState.CANCELLED
    emitted = task.samples_emitted
    time.sleep(0.05)
    assert task.samples_emitted == emitted
    assert board.get(ORDER) is OrderStatus.OUT_FOR_DELIVERY


def test_short_trip_across_central_chennai(broadcaster, board, clock):
    start, end = GeoPoint(13.08, 80.27), GeoPoint(13.09, 80.28)
    simulator = MovementSimulator(broadcaster, board.set, board.get, duration=120, clock=clock, threaded=False)
    simulator.start(make_order(restaurant=start, delivery=end))

    first = broadcaster.latest(ORDER)
    assert (first.lat, first.lng) == (pytest.approx(13.08), pytest.approx(80.27))

    clock.advance(60)
    [midpoint] = simulator.tick_all()
    assert midpoint.lat == pytest.approx(13.085)
    assert midpoint.lng == pytest.approx(80.275)

    clock.advance(60)
    [last] = simulator.tick_all()
    assert (last.lat, last.lng) == (pytest.approx(13.09), pytest.approx(80.28))
    assert board.get(ORDER) is OrderStatus.DELIVERED


def test_samples_carry_the_public_code(simulator, broadcaster):
    simulator.start(make_order())
    payload = broadcaster.latest(ORDER).to_dict()
    assert payload["orderId"] == "654321"


def test_task_cancelled_before_running_never_emits(broadcaster, board):
    task = SimulationTask(
        ORDER, A, B,
        publish=lambda sample: broadcaster.publish(ORDER, sample),
        on_status=board.set,
        status_of=lambda: board.get(ORDER),
        threaded=False,
    )
    assert task.cancel()
    assert task.start() is None
    assert task.state is SimulationState.CANCELLED
    assert broadcaster.latest(ORDER) is None


def test_overlapping_starts_leave_one_running_task(broadcaster, clock):
    board = StatusBoard()
    outcome = {}
    launched = []

    def second_start():
        try:
            outcome["task"] = sim.start(make_order())
        except Exception as e:
            outcome["error"] = e

    racer = threading.Thread(target=second_start)

    def set_status(order_id, status):
        board.set(order_id, status)
        if not launched:
            # The second start arrives while the first is mid-way
            launched.append(True)
            racer.start()
            racer.join(0.2)

    sim = MovementSimulator(broadcaster, on_status=set_status, status_of=board.get,
                            duration=120, tick_interval=1, clock=clock, threaded=False)
    try:
        first = sim.start(make_order())
        racer.join(5)

        assert "error" not in outcome
        second = outcome["task"]
        assert first.state is SimulationState.CANCELLED
        assert first.samples_emitted == 1
        assert second.state is SimulationState.RUNNING
        assert sim.get(ORDER) is second
        assert board.transitions == [OrderStatus.OUT_FOR_DELIVERY]
    finally:
        sim.shutdown()
