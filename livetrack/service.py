# livetrack/service.py
"""
Tracking service: wires the registry, assignment engine, position store,
simulator and query facade together and exposes the inbound interfaces.

Inbound from the order lifecycle:
- place_order / on_order_created: resolve coordinates, assign a partner,
  announce the new order to the owner and admin channels
- on_order_status_changed: apply and surface status transitions

Inbound from partner clients:
- set_availability, report_location
- start_simulation / stop_simulation when no device telemetry exists
- start_auto_update / stop_auto_update to re-broadcast the partner's last
  known position on a timer

Outbound:
- live events through Broadcaster subscriptions
- snapshots through get_snapshot
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config, utils
from .assignment import AssignmentEngine
from .broadcaster import Broadcaster, ChannelKey, Sink, Subscription
from .errors import NotFound, PreconditionFailed, Unauthorized
from .models import (
    DeliveryPartner,
    Event,
    GeoPoint,
    Order,
    OrderStatus,
    PositionSample,
    PositionSource,
    utc_now,
)
from .orders import OrderBook
from .registry import PartnerRegistry
from .relay import LocationRelay, RelayTask
from .scoring import ScoredCandidate
from .simulator import MovementSimulator, SimulationTask
from .tracking import TrackingQuery, TrackingSnapshot

logger = logging.getLogger(__name__)


def parse_status(value: Any) -> OrderStatus:
    """
    Raises:
        PreconditionFailed: If `value` is not a known status
    """
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise PreconditionFailed(f"Unknown order status: {value}")


class TrackingService:
    """
    Composition root of the assignment and live-tracking core.

    Every collaborator is injected or created per instance, so several
    isolated services can coexist (e.g. one per test).
    """

    def __init__(
        self,
        registry: Optional[PartnerRegistry] = None,
        broadcaster: Optional[Broadcaster] = None,
        geocoder: Optional[utils.Geocoder] = None,
        use_geocoding: bool = None,
        search_radius_km: float = None,
        simulation_duration: float = None,
        tick_interval: float = None,
        auto_update_interval: float = None,
        clock: Callable[[], float] = time.monotonic,
        threaded: bool = True,
    ) -> None:
        self.registry = registry or PartnerRegistry()
        self.broadcaster = broadcaster or Broadcaster()
        self.orders = OrderBook(self.registry, self.broadcaster)
        self.engine = AssignmentEngine(self.registry, self.orders.restaurant_location, search_radius_km)
        self.simulator = MovementSimulator(
            self.broadcaster,
            on_status=self._simulated_status,
            status_of=self.orders.status_of,
            duration=simulation_duration,
            tick_interval=tick_interval,
            clock=clock,
            threaded=threaded,
            on_finished=self._simulation_finished,
        )
        self.relay = LocationRelay(self._relay_position, interval=auto_update_interval, threaded=threaded)
        self.tracking = TrackingQuery(self.orders, self.registry, self.broadcaster)

        if use_geocoding is None:
            use_geocoding = config.USE_GEOCODING
        if geocoder is None and use_geocoding:
            geocoder = utils.Geocoder()
        self.geocoder = geocoder

    # -------------------------------------------------------------------------
    # Order lifecycle
    # -------------------------------------------------------------------------

    def place_order(
        self,
        restaurant_id: Optional[str],
        customer_name: str = "",
        delivery_address: Any = None,
        restaurant_latlng: Optional[Sequence[float]] = None,
        delivery_latlng: Optional[Sequence[float]] = None,
        final_amount: float = 0.0,
    ) -> Order:
        """
        Create an order, resolving both endpoints with provenance, then run
        the creation flow (assignment + announcement).

        Returns:
            The order after the assignment attempt
        """
        restaurant = self.orders.get_restaurant(restaurant_id)
        if restaurant_latlng is None and restaurant is not None and restaurant.location is not None:
            restaurant_latlng = restaurant.location.coords
        restaurant_address = (restaurant.address or restaurant.name) if restaurant else ""

        restaurant_point = utils.resolve_point(restaurant_latlng, restaurant_address, self.geocoder)
        delivery_point = utils.resolve_point(delivery_latlng, delivery_address, self.geocoder)

        order = self.orders.create(
            restaurant_id=restaurant_id,
            restaurant_point=restaurant_point,
            delivery_point=delivery_point,
            customer_name=customer_name,
            delivery_address=utils.build_address(delivery_address),
            final_amount=final_amount,
        )
        self.on_order_created(order.order_id)
        return self.orders.get(order.order_id)

    def on_order_created(
        self,
        order_id: str,
        restaurant_point: Optional[GeoPoint] = None,
        delivery_point: Optional[GeoPoint] = None,
    ) -> Optional[str]:
        """
        Creation hook: store endpoints, try to assign a partner, announce.

        An order without candidates stays PENDING and unassigned; that is a
        valid outcome, not an error.

        Returns:
            The assigned partner id, or None

        Raises:
            NotFound: If the order doesn't exist
        """
        if restaurant_point is not None or delivery_point is not None:
            self.orders.set_points(order_id, restaurant_point, delivery_point)

        order = self.orders.get(order_id)
        partner_id = order.assigned_partner_id
        if partner_id is None and not order.status.is_terminal:
            partner_id = self.engine.assign(order.restaurant_id)
            if partner_id is not None:
                self.orders.bind_partner(order.order_id, partner_id)
            else:
                logger.warning(f"Order {order.code} left unassigned; no partner available")

        self.orders.announce_created(order.order_id)
        return partner_id

    def retry_unassigned(self) -> Dict[str, Optional[str]]:
        """
        Re-run assignment for every pending, unassigned order.

        Returns:
            Mapping of order code -> assigned partner id (or None)
        """
        results: Dict[str, Optional[str]] = {}
        for order in self.orders.all():
            if order.status is not OrderStatus.PENDING or order.assigned_partner_id is not None:
                continue
            partner_id = self.engine.assign(order.restaurant_id)
            if partner_id is not None:
                bound = self.orders.bind_partner(order.order_id, partner_id)
                self.broadcaster.notify(
                    order.order_id, Event.order_status(bound), self.orders.owner_of(bound)
                )
            results[order.code] = partner_id
        return results

    def assign_partner(self, identifier: str, partner_id: str) -> Order:
        """
        Manually bind a partner (e.g. by the restaurant owner).

        Raises:
            NotFound: If the order or partner is unknown
            PreconditionFailed: If the order is terminal or already assigned
        """
        if partner_id not in self.registry:
            raise NotFound(f"Partner not found: {partner_id}")
        order = self.orders.bind_partner(identifier, partner_id)
        self.broadcaster.notify(order.order_id, Event.order_status(order), self.orders.owner_of(order))
        return order

    def on_order_status_changed(self, identifier: str, new_status: Any) -> Order:
        """
        Apply a status transition and surface it to subscribers.

        A terminal transition stops any running simulation for the order.

        Raises:
            NotFound: If the order doesn't exist
            PreconditionFailed: If the status is unknown or not allowed
        """
        status = parse_status(new_status)
        order, changed = self.orders.update_status(identifier, status)
        if changed and order.status.is_terminal:
            self.simulator.stop(order.order_id)
            self.relay.stop(order.order_id)
        return order

    # -------------------------------------------------------------------------
    # Partner client
    # -------------------------------------------------------------------------

    def set_availability(
        self,
        partner_id: str,
        is_available: bool,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> DeliveryPartner:
        """
        Go online/offline, optionally reporting the current position.

        Raises:
            PreconditionFailed: If a position is given but invalid
        """
        if (lat is not None or lng is not None) and not utils.is_valid_coordinate(lat, lng):
            raise PreconditionFailed(f"Invalid coordinates: ({lat}, {lng})")
        if lat is not None:
            self.registry.report_location(partner_id, lat, lng)
        return self.registry.set_availability(partner_id, is_available)

    def report_location(
        self,
        partner_id: str,
        lat: float,
        lng: float,
        order_identifier: Optional[str] = None,
        status: Any = None,
    ) -> Optional[PositionSample]:
        """
        Record a device position report.

        Without an order it only updates the registry. With an order, the
        partner must be the one assigned to it and the simulator must not
        currently own the order's position stream.

        Returns:
            The published sample, or None when no order was given

        Raises:
            PreconditionFailed: Invalid coordinates/status, or terminal order
            NotFound: Unknown order
            Unauthorized: Partner not assigned, or a simulation is running
        """
        if not utils.is_valid_coordinate(lat, lng):
            raise PreconditionFailed("lat and lng are required finite numbers")
        new_status = parse_status(status) if status else None

        if order_identifier is None:
            self.registry.report_location(partner_id, lat, lng)
            return None

        order = self.orders.find(order_identifier)
        if order is None:
            raise NotFound(f"Order not found: {order_identifier}")
        if order.assigned_partner_id is None or order.assigned_partner_id != partner_id:
            raise Unauthorized(f"Partner {partner_id} is not assigned to order {order.code}")
        if order.position_source is PositionSource.SIMULATOR and self.simulator.is_running(order.order_id):
            raise Unauthorized(f"Order {order.code} is being simulated; device reports are rejected")
        if new_status is not None and new_status is not order.status and order.status.is_terminal:
            raise PreconditionFailed(f"Order {order.code} is already {order.status.value}")

        self.registry.report_location(partner_id, lat, lng)
        self.orders.claim_position_source(order.order_id, PositionSource.DEVICE)
        if new_status is not None and new_status is not order.status:
            order = self.on_order_status_changed(order.order_id, new_status)

        sample = PositionSample(
            order_id=order.order_id,
            lat=float(lat),
            lng=float(lng),
            timestamp=utc_now(),
            source_partner_id=partner_id,
            status=order.status,
            order_code=order.code,
        )
        self.broadcaster.publish(order.order_id, sample)
        return sample

    def start_simulation(self, identifier: str, requested_by: Optional[str] = None) -> SimulationTask:
        """
        Simulate the trip of an order with no device telemetry.

        Args:
            identifier: Public code or internal id
            requested_by: Calling partner; None for system/admin requests

        Raises:
            NotFound: Unknown order
            Unauthorized: `requested_by` is not the assigned partner
            PreconditionFailed: Terminal order or missing coordinates
        """
        order = self.orders.get(identifier)
        if requested_by is not None and order.assigned_partner_id != requested_by:
            raise Unauthorized(f"Partner {requested_by} is not assigned to order {order.code}")
        if order.status.is_terminal:
            raise PreconditionFailed(f"Order {order.code} is already {order.status.value}")

        self.relay.stop(order.order_id)
        task = self.simulator.start(order)
        if task.is_running:
            self.orders.claim_position_source(order.order_id, PositionSource.SIMULATOR)
        return task

    def stop_simulation(self, identifier: str, requested_by: Optional[str] = None) -> bool:
        """
        Returns:
            True if a running simulation was cancelled
        """
        order = self.orders.get(identifier)
        if requested_by is not None and order.assigned_partner_id != requested_by:
            raise Unauthorized(f"Partner {requested_by} is not assigned to order {order.code}")
        return self.simulator.stop(order.order_id)

    def start_auto_update(self, identifier: str, partner_id: str) -> RelayTask:
        """
        Periodically re-broadcast the partner's registry position to the order.

        Args:
            identifier: Public code or internal id
            partner_id: Calling partner; must be the one assigned

        Raises:
            NotFound: Unknown order
            Unauthorized: Partner not assigned, or a simulation is running
            PreconditionFailed: Terminal order
        """
        order = self.orders.get(identifier)
        if order.assigned_partner_id is None or order.assigned_partner_id != partner_id:
            raise Unauthorized(f"Partner {partner_id} is not assigned to order {order.code}")
        if order.status.is_terminal:
            raise PreconditionFailed(f"Order {order.code} is already {order.status.value}")
        if self.simulator.is_running(order.order_id):
            raise Unauthorized(f"Order {order.code} is being simulated; auto-update is rejected")

        self.orders.claim_position_source(order.order_id, PositionSource.DEVICE)
        return self.relay.start(order.order_id, partner_id)

    def stop_auto_update(self, identifier: str, requested_by: Optional[str] = None) -> bool:
        """
        Returns:
            True if auto-update was running
        """
        order = self.orders.get(identifier)
        if requested_by is not None and order.assigned_partner_id != requested_by:
            raise Unauthorized(f"Partner {requested_by} is not assigned to order {order.code}")
        return self.relay.stop(order.order_id)

    def _relay_position(self, order_id: str, partner_id: str) -> Optional[PositionSample]:
        order = self.orders.find(order_id)
        if order is None or order.assigned_partner_id != partner_id or order.status.is_terminal:
            return None
        if order.position_source is PositionSource.SIMULATOR:
            return None
        partner = self.registry.get(partner_id)
        if partner is None or not partner.is_available or partner.location is None:
            return None

        sample = PositionSample(
            order_id=order.order_id,
            lat=partner.location.lat,
            lng=partner.location.lng,
            timestamp=utc_now(),
            source_partner_id=partner_id,
            status=order.status,
            order_code=order.code,
        )
        self.broadcaster.publish(order.order_id, sample)
        return sample

    def _simulated_status(self, order_id: str, status: OrderStatus) -> None:
        self.on_order_status_changed(order_id, status)

    def _simulation_finished(self, task: SimulationTask) -> None:
        # A replaced task finishes while its successor is registered
        if self.simulator.get(task.order_id) is None:
            self.orders.release_position_source(task.order_id, PositionSource.SIMULATOR)

    # -------------------------------------------------------------------------
    # Reads and subscriptions
    # -------------------------------------------------------------------------

    def get_snapshot(self, identifier: str) -> Optional[TrackingSnapshot]:
        return self.tracking.get_snapshot(identifier)

    def latest(self, identifier: str) -> Optional[PositionSample]:
        order_id = self.orders.resolve_id(identifier)
        return self.broadcaster.latest(order_id) if order_id else None

    def rank_partners(self, restaurant_id: str) -> List[ScoredCandidate]:
        return self.engine.rank(self.orders.restaurant_location(restaurant_id))

    def subscribe_order(self, identifier: str, sink: Sink) -> Subscription:
        """
        Raises:
            NotFound: If the order doesn't exist
        """
        order_id = self.orders.resolve_id(identifier)
        if order_id is None:
            raise NotFound(f"Order not found: {identifier}")
        return self.broadcaster.subscribe(ChannelKey.order(order_id), sink)

    def subscribe_owner(self, owner_id: str, sink: Sink) -> Subscription:
        return self.broadcaster.subscribe(ChannelKey.owner(owner_id), sink)

    def subscribe_admin(self, sink: Sink) -> Subscription:
        return self.broadcaster.subscribe(ChannelKey.admin(), sink)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self.broadcaster.unsubscribe(subscription)

    def shutdown(self) -> None:
        """Stop every simulation and relay, then close every live channel."""
        self.simulator.shutdown()
        self.relay.shutdown()
        self.broadcaster.close()
