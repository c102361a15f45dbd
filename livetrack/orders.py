# livetrack/orders.py
"""
In-memory order book: the order-lifecycle collaborator of the tracking core.

Stores restaurants and the tracking-relevant part of each order, applies
status transitions, keeps partner workload in step with assignments and
surfaces lifecycle events to the Broadcaster.

Orders are addressable by their public six-digit code or by their internal
32-hex id.
"""

from __future__ import annotations

import csv
import logging
import os
import random
import re
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from . import utils
from .broadcaster import Broadcaster
from .errors import NotFound, PreconditionFailed
from .models import (
    CoordSource,
    Event,
    GeoPoint,
    Order,
    OrderStatus,
    PositionSource,
    Restaurant,
    utc_now,
)
from .registry import PartnerRegistry

logger = logging.getLogger(__name__)

ORDER_CODE_PATTERN = re.compile(r"^[0-9]{6}$")
ORDER_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)


class OrderBook:
    """
    Thread-safe store of orders and restaurants.

    Attributes:
        registry: Partner registry whose workload follows assignments
        broadcaster: Receives order_created / order_status events
    """

    def __init__(self, registry: PartnerRegistry, broadcaster: Broadcaster, shards: int = None) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self._orders: Dict[str, Order] = {}
        self._codes: Dict[str, str] = {}
        self._restaurants: Dict[str, Restaurant] = {}
        self._locks = utils.ShardedLock(shards)
        self._create_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._orders)

    # -------------------------------------------------------------------------
    # Restaurants
    # -------------------------------------------------------------------------

    def add_restaurant(
        self,
        restaurant_id: str,
        name: str,
        owner_id: Optional[str] = None,
        address: str = "",
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> Restaurant:
        location = None
        if lat is not None or lng is not None:
            if not utils.is_valid_coordinate(lat, lng):
                raise PreconditionFailed(f"Invalid coordinates for restaurant {restaurant_id}: ({lat}, {lng})")
            location = GeoPoint(float(lat), float(lng), CoordSource.STORED)
        restaurant = Restaurant(restaurant_id, name, owner_id, address, location)
        self._restaurants[restaurant_id] = restaurant
        return restaurant

    def get_restaurant(self, restaurant_id: Optional[str]) -> Optional[Restaurant]:
        if not restaurant_id:
            return None
        return self._restaurants.get(restaurant_id)

    def restaurants(self) -> List[Restaurant]:
        return sorted(self._restaurants.values(), key=lambda r: r.restaurant_id)

    def restaurant_location(self, restaurant_id: str) -> Optional[GeoPoint]:
        """Location lookup used by the AssignmentEngine."""
        restaurant = self.get_restaurant(restaurant_id)
        return restaurant.location if restaurant else None

    def owner_of(self, order: Order) -> Optional[str]:
        restaurant = self.get_restaurant(order.restaurant_id)
        return restaurant.owner_id if restaurant else None

    def load_restaurants_csv(self, restaurant_file: str) -> int:
        """
        Load restaurants from CSV (restaurant_id, name, owner_id, address, lat, lng).

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If a row is malformed
        """
        if not os.path.exists(restaurant_file):
            raise FileNotFoundError(f"Restaurant file not found: {restaurant_file}")

        count = 0
        with open(restaurant_file, "r", newline="") as f:
            for row in csv.DictReader(f):
                try:
                    lat_raw = (row.get("lat") or "").strip()
                    lng_raw = (row.get("lng") or "").strip()
                    self.add_restaurant(
                        restaurant_id=row["restaurant_id"],
                        name=row["name"],
                        owner_id=row.get("owner_id") or None,
                        address=row.get("address", ""),
                        lat=float(lat_raw) if lat_raw else None,
                        lng=float(lng_raw) if lng_raw else None,
                    )
                except (KeyError, ValueError, PreconditionFailed) as e:
                    raise ValueError(f"Invalid restaurant data in {restaurant_file}: {e}")
                count += 1
        logger.info(f"Loaded {count} restaurants from {restaurant_file}")
        return count

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def _generate_code(self) -> str:
        """Random six-digit code not used by any stored order."""
        while True:
            code = str(random.randint(100000, 999999))
            if code not in self._codes:
                return code

    def create(
        self,
        restaurant_id: Optional[str] = None,
        restaurant_point: Optional[GeoPoint] = None,
        delivery_point: Optional[GeoPoint] = None,
        customer_name: str = "",
        delivery_address: str = "",
        final_amount: float = 0.0,
        order_id: Optional[str] = None,
    ) -> Order:
        """
        Store a new order in PENDING state.

        Returns:
            A copy of the stored order
        """
        with self._create_lock:
            order_id = (order_id or uuid.uuid4().hex).lower()
            if not ORDER_ID_PATTERN.match(order_id):
                raise PreconditionFailed(f"Order id must be 32 hex characters: {order_id}")
            if order_id in self._orders:
                raise PreconditionFailed(f"Order {order_id} already exists")
            order = Order(
                order_id=order_id,
                code=self._generate_code(),
                restaurant_id=restaurant_id,
                restaurant_point=restaurant_point,
                delivery_point=delivery_point,
                customer_name=customer_name,
                delivery_address=delivery_address,
                final_amount=final_amount,
            )
            self._orders[order_id] = order
            self._codes[order.code] = order_id
            return replace(order)

    def resolve_id(self, identifier: Optional[str]) -> Optional[str]:
        """
        Map a public code or an internal id to the internal id.

        Returns:
            The internal id, or None if no order matches either form
        """
        if not identifier:
            return None
        identifier = str(identifier).strip()
        if ORDER_CODE_PATTERN.match(identifier):
            order_id = self._codes.get(identifier)
            if order_id is not None:
                return order_id
        if ORDER_ID_PATTERN.match(identifier) and identifier.lower() in self._orders:
            return identifier.lower()
        return None

    def find(self, identifier: Optional[str]) -> Optional[Order]:
        """Copy of the order behind `identifier`, or None."""
        order_id = self.resolve_id(identifier)
        if order_id is None:
            return None
        with self._locks.for_key(order_id):
            return replace(self._orders[order_id])

    def get(self, identifier: Optional[str]) -> Order:
        """
        Like find(), but an unknown identifier is an error.

        Raises:
            NotFound: If the order doesn't exist
        """
        order = self.find(identifier)
        if order is None:
            raise NotFound(f"Order not found: {identifier}")
        return order

    def all(self) -> List[Order]:
        result = []
        for order_id in list(self._orders.keys()):
            with self._locks.for_key(order_id):
                result.append(replace(self._orders[order_id]))
        result.sort(key=lambda o: o.created_at)
        return result

    def status_of(self, order_id: str) -> Optional[OrderStatus]:
        order = self._orders.get(order_id)
        return order.status if order is not None else None

    def set_points(
        self,
        identifier: str,
        restaurant_point: Optional[GeoPoint],
        delivery_point: Optional[GeoPoint],
    ) -> Order:
        """Overwrite the trip endpoints of an order (None keeps the stored point)."""
        order_id = self._require_id(identifier)
        with self._locks.for_key(order_id):
            order = self._orders[order_id]
            if restaurant_point is not None:
                order.restaurant_point = restaurant_point
            if delivery_point is not None:
                order.delivery_point = delivery_point
            order.updated_at = utc_now()
            return replace(order)

    def bind_partner(self, identifier: str, partner_id: str) -> Order:
        """
        Attach an assigned partner to the order.

        A PENDING order moves to CONFIRMED and the partner's workload grows
        by one.

        Raises:
            NotFound: If the order doesn't exist
            PreconditionFailed: If the order is terminal or already assigned
        """
        order_id = self._require_id(identifier)
        with self._locks.for_key(order_id):
            order = self._orders[order_id]
            if order.status.is_terminal:
                raise PreconditionFailed(f"Order {order.code} is {order.status.value}")
            if order.assigned_partner_id is not None:
                raise PreconditionFailed(
                    f"Order {order.code} is already assigned to {order.assigned_partner_id}"
                )
            order.assigned_partner_id = partner_id
            if order.status is OrderStatus.PENDING:
                order.status = OrderStatus.CONFIRMED
            order.updated_at = utc_now()
            snapshot = replace(order)

        self.registry.increment_workload(partner_id, +1)
        logger.info(f"Order {snapshot.code} assigned to partner {partner_id}")
        return snapshot

    def update_status(self, identifier: str, new_status: OrderStatus) -> Tuple[Order, bool]:
        """
        Apply a status transition and surface it to live subscribers.

        Terminal orders accept no further transitions, and an assigned order
        cannot go back to PENDING. Reaching a terminal state releases one
        unit of the assigned partner's workload.

        Returns:
            (order copy, whether the status actually changed)

        Raises:
            NotFound: If the order doesn't exist
            PreconditionFailed: If the transition is not allowed
        """
        if not isinstance(new_status, OrderStatus):
            try:
                new_status = OrderStatus(new_status)
            except ValueError:
                raise PreconditionFailed(f"Unknown order status: {new_status}")

        order_id = self._require_id(identifier)
        with self._locks.for_key(order_id):
            order = self._orders[order_id]
            previous = order.status
            if previous is new_status:
                return replace(order), False
            if previous.is_terminal:
                raise PreconditionFailed(
                    f"Order {order.code} is already {previous.value}; no further transitions"
                )
            if new_status is OrderStatus.PENDING and order.assigned_partner_id is not None:
                raise PreconditionFailed(f"Assigned order {order.code} cannot return to pending")
            order.status = new_status
            order.updated_at = utc_now()
            snapshot = replace(order)

        logger.info(f"Order {snapshot.code}: {previous.value} -> {new_status.value}")
        if new_status.is_terminal and snapshot.assigned_partner_id:
            self.registry.increment_workload(snapshot.assigned_partner_id, -1)
        self.broadcaster.notify(order_id, Event.order_status(snapshot), self.owner_of(snapshot))
        return snapshot, True

    def announce_created(self, identifier: str) -> Order:
        """Push an order_created event to the order, owner and admin channels."""
        order = self.get(identifier)
        self.broadcaster.notify(order.order_id, Event.order_created(order), self.owner_of(order))
        return order

    # -------------------------------------------------------------------------
    # Position ownership
    # -------------------------------------------------------------------------

    def claim_position_source(self, identifier: str, source: PositionSource) -> Optional[PositionSource]:
        """
        Hand the order's live position to `source`.

        Returns:
            The previous owner
        """
        order_id = self._require_id(identifier)
        with self._locks.for_key(order_id):
            order = self._orders[order_id]
            previous = order.position_source
            order.position_source = source
            return previous

    def release_position_source(self, identifier: str, source: PositionSource) -> bool:
        """Clear ownership if `source` still holds it."""
        order_id = self.resolve_id(identifier)
        if order_id is None:
            return False
        with self._locks.for_key(order_id):
            order = self._orders[order_id]
            if order.position_source is not source:
                return False
            order.position_source = None
            return True

    def _require_id(self, identifier: str) -> str:
        order_id = self.resolve_id(identifier)
        if order_id is None:
            raise NotFound(f"Order not found: {identifier}")
        return order_id
