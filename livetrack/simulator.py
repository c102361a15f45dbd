# livetrack/simulator.py
"""
Movement Simulator for the LiveTrack service.

When no physical device reports GPS for an order, the simulator synthesizes
a believable trip from the restaurant to the customer:

- The trip lasts `config.SIMULATION_DURATION_SECONDS` (120 s by default)
- One sample is emitted per tick (1 s) by linear interpolation
  lat(t) = lerp(restaurant_lat, delivery_lat, t / T), same for lng
- Entering RUNNING moves a pending/confirmed/preparing order to
  out_for_delivery; reaching t = T marks it delivered

Task state machine:
- IDLE -> RUNNING: start() emits the t = 0 sample and arms the timer
- RUNNING -> COMPLETED: the t = T sample was emitted, timer stopped
- IDLE/RUNNING -> CANCELLED: stop() or a newer simulation for the same order

At most one task runs per order. Each running task owns one daemon thread
that waits on its cancel event between ticks, so cancellation is immediate
and never leaves a timer behind.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from . import config, utils
from .broadcaster import Broadcaster
from .errors import PreconditionFailed, TrackingError
from .models import PRE_DISPATCH_STATUSES, GeoPoint, Order, OrderStatus, PositionSample, utc_now

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, OrderStatus], None]
StatusLookup = Callable[[str], Optional[OrderStatus]]


class SimulationState(Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SimulationTask:
    """
    One simulated trip, explicitly cancellable.

    Attributes:
        order_id: Order whose position is simulated
        origin/destination: Trip endpoints (restaurant, customer)
        duration: Trip length T in seconds
        tick_interval: Seconds between samples
        started_at: Clock reading when the task entered RUNNING
        samples_emitted: Number of samples published so far
    """

    def __init__(
        self,
        order_id: str,
        origin: GeoPoint,
        destination: GeoPoint,
        publish: Callable[[PositionSample], None],
        on_status: StatusCallback,
        status_of: Callable[[], Optional[OrderStatus]],
        duration: float = None,
        tick_interval: float = None,
        clock: Callable[[], float] = time.monotonic,
        on_finished: Optional[Callable[["SimulationTask"], None]] = None,
        threaded: bool = True,
        order_code: Optional[str] = None,
    ) -> None:
        self.order_id = order_id
        self.order_code = order_code
        self.origin = origin
        self.destination = destination
        self.duration: float = config.SIMULATION_DURATION_SECONDS if duration is None else duration
        self.tick_interval: float = config.SIMULATION_TICK_SECONDS if tick_interval is None else tick_interval
        self.started_at: Optional[float] = None
        self.samples_emitted: int = 0
        self.state: SimulationState = SimulationState.IDLE

        self._publish = publish
        self._on_status = on_status
        self._status_of = status_of
        self._clock = clock
        self._on_finished = on_finished
        self._threaded = threaded
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"SimulationTask({self.order_id}, {self.state.value}, samples={self.samples_emitted})"

    @property
    def is_running(self) -> bool:
        return self.state is SimulationState.RUNNING

    def position_at(self, elapsed: float) -> Tuple[float, float]:
        """
        Interpolated (lat, lng) after `elapsed` seconds, clamped to [0, T].
        """
        fraction = utils.clamp01(elapsed / self.duration) if self.duration > 0 else 1.0
        return (
            utils.lerp(self.origin.lat, self.destination.lat, fraction),
            utils.lerp(self.origin.lng, self.destination.lng, fraction),
        )

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, self._clock() - self.started_at)

    def start(self) -> Optional[PositionSample]:
        """
        Enter RUNNING, emit the t = 0 sample and arm the timer.

        Returns:
            The first sample, or None if the task was cancelled before it ran

        Raises:
            RuntimeError: If the task was already started
        """
        with self._lock:
            if self.state is SimulationState.CANCELLED and self.started_at is None:
                return None
            if self.state is not SimulationState.IDLE:
                raise RuntimeError(f"{self!r} cannot be started again")
            self.started_at = self._clock()
            self.state = SimulationState.RUNNING

        first = self.tick()
        if self._threaded and self.is_running:
            self._thread = threading.Thread(
                target=self._run, name=f"simulation-{self.order_id}", daemon=True
            )
            self._thread.start()
        return first

    def tick(self) -> Optional[PositionSample]:
        """
        Emit the sample for the current clock reading.

        Returns:
            The published sample, or None if the task is not running
        """
        completed = False
        with self._lock:
            if self.state is not SimulationState.RUNNING:
                return None

            elapsed = self.elapsed()
            lat, lng = self.position_at(elapsed)
            status = self._status_of() or OrderStatus.OUT_FOR_DELIVERY
            sample = PositionSample(
                order_id=self.order_id,
                lat=lat,
                lng=lng,
                timestamp=utc_now(),
                source_partner_id=config.SIMULATED_DRIVER_ID,
                status=status,
                order_code=self.order_code,
            )
            self._publish(sample)
            self.samples_emitted += 1
            logger.debug(f"Simulated {self.order_id} at t={elapsed:.1f}s: ({lat:.6f}, {lng:.6f})")

            if self.duration <= 0 or elapsed >= self.duration:
                self.state = SimulationState.COMPLETED
                self._cancelled.set()
                completed = True

        if completed:
            self._complete()
        return sample

    def cancel(self) -> bool:
        """
        Stop emitting. The order's status is left as it is.

        Returns:
            True if the task was still active
        """
        with self._lock:
            if self.state not in (SimulationState.IDLE, SimulationState.RUNNING):
                return False
            self.state = SimulationState.CANCELLED
            self._cancelled.set()

        logger.info(f"Simulation for order {self.order_id} cancelled after {self.samples_emitted} samples")
        if self._on_finished is not None:
            self._on_finished(self)
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _complete(self) -> None:
        logger.info(f"Simulation for order {self.order_id} completed")
        try:
            self._on_status(self.order_id, OrderStatus.DELIVERED)
        except TrackingError as e:
            logger.warning(f"Could not mark order {self.order_id} delivered: {e}")
        finally:
            if self._on_finished is not None:
                self._on_finished(self)

    def _run(self) -> None:
        """Timer loop: one tick per interval until completed or cancelled."""
        while not self._cancelled.wait(self.tick_interval):
            try:
                self.tick()
            except Exception:
                logger.exception(f"Simulation tick failed for order {self.order_id}")
                self.cancel()
                return


class MovementSimulator:
    """
    Registry of running simulations, at most one per order.

    Attributes:
        broadcaster: Position store receiving every sample
        on_status: Applies status transitions to the order lifecycle
        status_of: Reads an order's current status for sample snapshots
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        on_status: StatusCallback,
        status_of: StatusLookup,
        duration: float = None,
        tick_interval: float = None,
        clock: Callable[[], float] = time.monotonic,
        threaded: bool = True,
        on_finished: Optional[Callable[[SimulationTask], None]] = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.on_status = on_status
        self.status_of = status_of
        self.duration = config.SIMULATION_DURATION_SECONDS if duration is None else duration
        self.tick_interval = config.SIMULATION_TICK_SECONDS if tick_interval is None else tick_interval
        self.clock = clock
        self.threaded = threaded
        self.on_finished = on_finished
        self._tasks: Dict[str, SimulationTask] = {}
        self._lock = threading.Lock()
        # Held across a whole start/stop so requests for one order never interleave
        self._order_locks = utils.ShardedLock(reentrant=True)

    def __len__(self) -> int:
        return len(self._tasks)

    def start(self, order: Order) -> SimulationTask:
        """
        Start simulating `order`'s trip, replacing any running simulation.

        Args:
            order: Order with restaurant and delivery points

        Returns:
            The running task

        Raises:
            PreconditionFailed: If either endpoint is missing or invalid
        """
        origin, destination = order.restaurant_point, order.delivery_point
        if origin is None or not utils.is_valid_coordinate(origin.lat, origin.lng):
            raise PreconditionFailed(f"Order {order.code} has no usable restaurant coordinates")
        if destination is None or not utils.is_valid_coordinate(destination.lat, destination.lng):
            raise PreconditionFailed(f"Order {order.code} has no usable delivery coordinates")

        order_id = order.order_id
        task = SimulationTask(
            order_id=order_id,
            origin=origin,
            destination=destination,
            publish=lambda sample: self.broadcaster.publish(order_id, sample),
            on_status=self.on_status,
            status_of=lambda: self.status_of(order_id),
            duration=self.duration,
            tick_interval=self.tick_interval,
            clock=self.clock,
            on_finished=self._finished,
            threaded=self.threaded,
            order_code=order.code,
        )

        with self._order_locks.for_key(order_id):
            with self._lock:
                previous = self._tasks.get(order_id)
                self._tasks[order_id] = task
            if previous is not None:
                previous.cancel()

            current = self.status_of(order_id)
            if current in PRE_DISPATCH_STATUSES:
                self.on_status(order_id, OrderStatus.OUT_FOR_DELIVERY)

            logger.info(
                f"Simulating order {order.code}: ({origin.lat:.5f}, {origin.lng:.5f}) -> "
                f"({destination.lat:.5f}, {destination.lng:.5f}) over {task.duration:.0f}s"
            )
            task.start()
        return task

    def stop(self, order_id: str) -> bool:
        """
        Cancel the order's simulation, if any.

        Returns:
            True if a running simulation was cancelled
        """
        with self._order_locks.for_key(order_id):
            with self._lock:
                task = self._tasks.get(order_id)
            if task is None:
                return False
            return task.cancel()

    def get(self, order_id: str) -> Optional[SimulationTask]:
        with self._lock:
            return self._tasks.get(order_id)

    def is_running(self, order_id: str) -> bool:
        task = self.get(order_id)
        return task is not None and task.is_running

    def tick_all(self) -> List[PositionSample]:
        """Tick every running task once (used when threaded=False)."""
        with self._lock:
            tasks = list(self._tasks.values())
        samples = []
        for task in tasks:
            sample = task.tick()
            if sample is not None:
                samples.append(sample)
        return samples

    def shutdown(self, timeout: float = 1.0) -> None:
        """Cancel every simulation and wait briefly for their threads."""
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            task.join(timeout)

    def _finished(self, task: SimulationTask) -> None:
        with self._lock:
            if self._tasks.get(task.order_id) is task:
                del self._tasks[task.order_id]
        if self.on_finished is not None:
            self.on_finished(task)
