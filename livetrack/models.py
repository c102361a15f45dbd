# livetrack/models.py
"""
Core domain models for the LiveTrack assignment and tracking service.

This module defines the data structures shared by every component:
- DeliveryPartner: A courier with availability, workload and last location
- Restaurant: Pickup point and owning account
- Order: The tracking-relevant subset of a customer order
- PositionSample: The latest known position of an order
- Event: A tagged message pushed to live subscribers
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def isoformat(ts: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a trailing Z, the format browser clients parse."""
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class OrderStatus(Enum):
    """Lifecycle states for an order."""
    PENDING = "pending"                    # Placed, no partner yet
    CONFIRMED = "confirmed"                # Partner bound
    PREPARING = "preparing"                # Kitchen working on it
    OUT_FOR_DELIVERY = "out_for_delivery"  # On the road
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


# Statuses that a starting trip moves forward to OUT_FOR_DELIVERY
PRE_DISPATCH_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING)


class CoordSource(Enum):
    """Provenance of a stored coordinate."""
    STORED = "stored"      # Supplied by the client
    GEOCODED = "geocoded"  # Derived from the address
    DEFAULT = "default"    # Last-resort city default


class PositionSource(Enum):
    """Which writer currently owns an order's live position."""
    DEVICE = "device"
    SIMULATOR = "simulator"


class EventType(Enum):
    LOCATION = "location"
    ORDER_CREATED = "order_created"
    ORDER_STATUS = "order_status"


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair tagged with where it came from."""
    lat: float
    lng: float
    source: CoordSource = CoordSource.STORED

    @property
    def coords(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Location:
    """Last reported position of a partner."""
    lat: float
    lng: float
    updated_at: datetime


@dataclass
class DeliveryPartner:
    """
    A courier in the delivery fleet.

    Attributes:
        partner_id: Identity of the partner's user account
        name/phone: Contact details shown on tracking pages
        vehicle_type: 'motorbike', 'bike', 'car', ...
        vehicle_id: Registration number
        is_available: Set by the partner's own client
        active_orders: Orders assigned and not yet terminal (never negative)
        location: Last reported position, None until the first report
    """
    partner_id: str
    name: str = ""
    phone: str = ""
    vehicle_type: str = "motorbike"
    vehicle_id: str = ""
    is_available: bool = False
    active_orders: int = 0
    location: Optional[Location] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.partner_id,
            "name": self.name,
            "phone": self.phone,
            "vehicleType": self.vehicle_type,
            "vehicleId": self.vehicle_id,
        }

    def __repr__(self) -> str:
        state = "available" if self.is_available else "offline"
        return f"DeliveryPartner({self.partner_id}, {state}, active={self.active_orders})"


@dataclass
class Restaurant:
    restaurant_id: str
    name: str
    owner_id: Optional[str] = None
    address: str = ""
    location: Optional[GeoPoint] = None

    def summary(self) -> Dict[str, Any]:
        return {"id": self.restaurant_id, "name": self.name, "address": self.address}


@dataclass
class Order:
    """
    Tracking-relevant view of a customer order.

    Attributes:
        order_id: Internal identifier (32 hex characters)
        code: Public six-digit order code shown to customers
        restaurant_id: Restaurant preparing the order
        status: Current lifecycle state
        assigned_partner_id: Bound partner; only set past PENDING
        restaurant_point/delivery_point: Trip endpoints with provenance
        position_source: Writer currently owning the live position
    """
    order_id: str
    code: str
    restaurant_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    assigned_partner_id: Optional[str] = None
    restaurant_point: Optional[GeoPoint] = None
    delivery_point: Optional[GeoPoint] = None
    customer_name: str = ""
    delivery_address: str = ""
    final_amount: float = 0.0
    position_source: Optional[PositionSource] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.order_id,
            "orderId": self.code,
            "status": self.status.value,
            "finalAmount": self.final_amount,
            "createdAt": isoformat(self.created_at),
            "customerName": self.customer_name,
            "deliveryAddress": self.delivery_address,
            "restaurantLatLng": self.restaurant_point.to_dict() if self.restaurant_point else None,
            "deliveryLatLng": self.delivery_point.to_dict() if self.delivery_point else None,
            "coordSource": {
                "restaurant": self.restaurant_point.source.value if self.restaurant_point else None,
                "delivery": self.delivery_point.source.value if self.delivery_point else None,
            },
        }

    def __repr__(self) -> str:
        return f"Order({self.code}, {self.status.value})"


@dataclass(frozen=True)
class PositionSample:
    """Latest known position of an order. Exactly one is kept per order."""
    order_id: str
    lat: float
    lng: float
    timestamp: datetime
    source_partner_id: str
    status: OrderStatus
    order_code: Optional[str] = None  # public code shown to clients

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_code or self.order_id,
            "lat": self.lat,
            "lng": self.lng,
            "updatedAt": isoformat(self.timestamp),
            "driverId": self.source_partner_id,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class Event:
    """A tagged message for live subscribers."""
    type: EventType
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": self.payload}

    def to_sse(self) -> str:
        """Render as a server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"

    @classmethod
    def location(cls, sample: PositionSample) -> "Event":
        return cls(EventType.LOCATION, sample.to_dict())

    @classmethod
    def order_created(cls, order: Order) -> "Event":
        return cls(EventType.ORDER_CREATED, {
            "orderId": order.code,
            "orderStatus": order.status.value,
            "finalAmount": order.final_amount,
            "assignedTo": order.assigned_partner_id,
            "createdAt": isoformat(order.created_at),
        })

    @classmethod
    def order_status(cls, order: Order) -> "Event":
        return cls(EventType.ORDER_STATUS, {
            "orderId": order.code,
            "orderStatus": order.status.value,
            "assignedTo": order.assigned_partner_id,
            "updatedAt": isoformat(order.updated_at),
        })
