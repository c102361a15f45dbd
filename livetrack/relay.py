# livetrack/relay.py
"""
Location relay for the LiveTrack service.

A partner app can switch on auto-update for the order it is delivering.
While it is on, the partner's last registry position is re-broadcast to the
order's channel every `config.AUTO_UPDATE_INTERVAL_SECONDS`, so tracking
pages keep moving even when the app only reports availability pings.

A tick with no usable position (partner offline or never located) emits
nothing. At most one relay runs per order.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from . import config
from .models import PositionSample

logger = logging.getLogger(__name__)

RelayEmitter = Callable[[str, str], Optional[PositionSample]]


class RelayTask:
    """
    Periodic re-broadcast for one order, explicitly cancellable.

    Attributes:
        order_id: Order whose channel receives the samples
        partner_id: Partner whose registry position is relayed
        interval: Seconds between two relays
        ticks: Relay attempts so far
        samples_emitted: Attempts that published a sample
    """

    def __init__(
        self,
        order_id: str,
        partner_id: str,
        emit: RelayEmitter,
        interval: float = None,
        threaded: bool = True,
    ) -> None:
        self.order_id = order_id
        self.partner_id = partner_id
        self.interval: float = config.AUTO_UPDATE_INTERVAL_SECONDS if interval is None else interval
        self.ticks: int = 0
        self.samples_emitted: int = 0

        self._emit = emit
        self._threaded = threaded
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        state = "active" if self.active else "stopped"
        return f"RelayTask({self.order_id}, {self.partner_id}, {state}, samples={self.samples_emitted})"

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def start(self) -> None:
        """Arm the timer. The first relay happens one interval from now."""
        if self._threaded and self._thread is None and self.active:
            self._thread = threading.Thread(
                target=self._run, name=f"relay-{self.order_id}", daemon=True
            )
            self._thread.start()

    def tick(self) -> Optional[PositionSample]:
        """
        Relay the partner's position once.

        Returns:
            The published sample, or None when stopped or nothing was usable
        """
        if not self.active:
            return None
        self.ticks += 1
        sample = self._emit(self.order_id, self.partner_id)
        if sample is not None:
            self.samples_emitted += 1
        return sample

    def cancel(self) -> bool:
        if self._cancelled.is_set():
            return False
        self._cancelled.set()
        logger.info(f"Auto-update for order {self.order_id} stopped after {self.samples_emitted} relays")
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            try:
                self.tick()
            except Exception:
                # A failed relay skips one beat; the next interval tries again
                logger.exception(f"Auto-update tick failed for order {self.order_id}")


class LocationRelay:
    """Registry of auto-update relays, at most one per order."""

    def __init__(self, emit: RelayEmitter, interval: float = None, threaded: bool = True) -> None:
        self.emit = emit
        self.interval = config.AUTO_UPDATE_INTERVAL_SECONDS if interval is None else interval
        self.threaded = threaded
        self._tasks: Dict[str, RelayTask] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    def start(self, order_id: str, partner_id: str) -> RelayTask:
        """Start relaying for `order_id`, replacing any relay already running."""
        task = RelayTask(order_id, partner_id, self.emit, self.interval, self.threaded)
        with self._lock:
            previous = self._tasks.get(order_id)
            self._tasks[order_id] = task
        if previous is not None:
            previous.cancel()
        task.start()
        logger.info(f"Auto-update for order {order_id} from partner {partner_id} every {task.interval:g}s")
        return task

    def stop(self, order_id: str) -> bool:
        """
        Returns:
            True if a relay was running
        """
        with self._lock:
            task = self._tasks.pop(order_id, None)
        return task is not None and task.cancel()

    def get(self, order_id: str) -> Optional[RelayTask]:
        with self._lock:
            return self._tasks.get(order_id)

    def is_running(self, order_id: str) -> bool:
        task = self.get(order_id)
        return task is not None and task.active

    def tick_all(self) -> List[PositionSample]:
        """Relay every active order once (used when threaded=False)."""
        with self._lock:
            tasks = list(self._tasks.values())
        samples = []
        for task in tasks:
            sample = task.tick()
            if sample is not None:
                samples.append(sample)
        return samples

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            task.join(timeout)
