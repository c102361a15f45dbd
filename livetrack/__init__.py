# livetrack/__init__.py

from .models import (
    DeliveryPartner,
    Restaurant,
    Order,
    OrderStatus,
    GeoPoint,
    CoordSource,
    PositionSample,
    PositionSource,
    Event,
    EventType,
)
from .errors import TrackingError, NotFound, PreconditionFailed, Unauthorized, DegradedLookup
from .registry import PartnerRegistry
from .assignment import AssignmentEngine
from .broadcaster import AsyncQueueSink, Broadcaster, ChannelKey, QueueSink, RecentEventsSink, Subscription
from .orders import OrderBook
from .simulator import MovementSimulator, SimulationTask, SimulationState
from .relay import LocationRelay, RelayTask
from .tracking import TrackingQuery, TrackingSnapshot
from .service import TrackingService
from .utils import haversine_distance, Geocoder

__version__ = "1.0.0"

__all__ = [
    # Models
    "DeliveryPartner",
    "Restaurant",
    "Order",
    "OrderStatus",
    "GeoPoint",
    "CoordSource",
    "PositionSample",
    "PositionSource",
    "Event",
    "EventType",
    # Errors
    "TrackingError",
    "NotFound",
    "PreconditionFailed",
    "Unauthorized",
    "DegradedLookup",
    # Core
    "PartnerRegistry",
    "AssignmentEngine",
    "Broadcaster",
    "ChannelKey",
    "QueueSink",
    "AsyncQueueSink",
    "RecentEventsSink",
    "Subscription",
    "OrderBook",
    "MovementSimulator",
    "SimulationTask",
    "SimulationState",
    "LocationRelay",
    "RelayTask",
    "TrackingQuery",
    "TrackingSnapshot",
    "TrackingService",
    # Functions
    "haversine_distance",
    "Geocoder",
]
