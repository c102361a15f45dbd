# livetrack/api.py
"""
HTTP and server-sent-events transport for the tracking service.

Routes mirror the tracking endpoints used by the customer tracking page,
the partner app, the restaurant-owner dashboard and the admin console.
The calling partner identifies itself with the `X-Partner-Id` header.

Error mapping:
    NotFound -> 404, PreconditionFailed -> 400, Unauthorized -> 403,
    DegradedLookup (strict mode only) -> 503
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from . import config
from .broadcaster import AsyncQueueSink, Subscription
from .errors import DegradedLookup, NotFound, PreconditionFailed, TrackingError, Unauthorized
from .service import TrackingService

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFound, 404),
    (PreconditionFailed, 400),
    (Unauthorized, 403),
    (DegradedLookup, 503),
]

KEEPALIVE_FRAME = ": keep-alive\n\n"


# --- Pydantic Schemas ---

class LatLng(BaseModel):
    lat: float
    lng: float


class LocationReport(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None
    status: Optional[str] = None


class DriverStatusRequest(BaseModel):
    isOnline: bool
    lat: Optional[float] = None
    lng: Optional[float] = None


class StatusChangeRequest(BaseModel):
    status: str


class PlaceOrderRequest(BaseModel):
    restaurantId: Optional[str] = None
    customerName: str = ""
    deliveryAddress: Union[str, Dict[str, Any], None] = None
    restaurantLatLng: Optional[LatLng] = None
    deliveryLatLng: Optional[LatLng] = None
    finalAmount: float = 0.0


# --- Streaming ---

async def event_stream(
    sink: AsyncQueueSink,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = None,
    poll: float = None,
) -> AsyncIterator[str]:
    """
    Render a sink's events as SSE frames until the client goes away or the
    sink is closed.

    The sink is awaited on the event loop, so an idle stream holds no worker
    thread. The client is checked every `poll` seconds and a comment frame
    is sent after `keepalive` idle seconds.
    """
    if keepalive is None:
        keepalive = config.STREAM_KEEPALIVE_SECONDS
    if poll is None:
        poll = min(config.STREAM_POLL_SECONDS, keepalive)
    idle = 0.0
    while True:
        if await is_disconnected():
            return
        event = await sink.get(poll)
        if event is None:
            if sink.closed:
                return
            idle += poll
            if idle >= keepalive:
                idle = 0.0
                yield KEEPALIVE_FRAME
            continue
        idle = 0.0
        yield event.to_sse()


def _require_partner(partner_id: Optional[str]) -> str:
    if not partner_id:
        raise Unauthorized("X-Partner-Id header is required")
    return partner_id


def create_app(service: Optional[TrackingService] = None) -> FastAPI:
    """
    Build the FastAPI application around a tracking service.

    Args:
        service: Service to expose; a fresh one is created when omitted

    Returns:
        The configured application; the service is reachable as
        `app.state.service`
    """
    service = service or TrackingService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down tracking service")
        service.shutdown()

    app = FastAPI(title="LiveTrack Dispatch", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TrackingError)
    async def tracking_error_handler(request: Request, exc: TrackingError):
        status_code = 500
        for error_type, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(status_code=status_code, content={"message": str(exc)})

    def stream(request: Request, subscribe: Callable[[AsyncQueueSink], Subscription]) -> StreamingResponse:
        # Subscribe only once the body runs: a client gone before the first
        # frame leaves nothing registered
        async def body() -> AsyncIterator[str]:
            sink = AsyncQueueSink()
            subscription = subscribe(sink)
            try:
                async for frame in event_stream(sink, request.is_disconnected):
                    yield frame
            finally:
                service.unsubscribe(subscription)
                sink.close()
                logger.debug(f"{subscription} stream ended")

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # --- Endpoints ---

    @app.get("/tracking/stream/{order}")
    async def order_stream(order: str, request: Request):
        order_id = service.orders.resolve_id(order)
        if order_id is None:
            raise NotFound("Order not found")
        return stream(request, lambda sink: service.subscribe_order(order_id, sink))

    @app.get("/realtime/owner/{owner_id}")
    async def owner_stream(owner_id: str, request: Request):
        return stream(request, lambda sink: service.subscribe_owner(owner_id, sink))

    @app.get("/realtime/admin")
    async def admin_stream(request: Request):
        return stream(request, service.subscribe_admin)

    @app.get("/tracking/order/{order}")
    def get_tracking(order: str):
        snapshot = service.get_snapshot(order)
        if snapshot is None:
            raise NotFound("Order not found")
        return snapshot.to_dict()

    @app.post("/tracking/update/{order}")
    def update_location(order: str, report: LocationReport, x_partner_id: Optional[str] = Header(None)):
        partner_id = _require_partner(x_partner_id)
        service.report_location(partner_id, report.lat, report.lng, order, report.status)
        return {"success": True, "message": "Location updated successfully"}

    @app.post("/tracking/simulate/{order}")
    def start_simulation(order: str, x_partner_id: Optional[str] = Header(None)):
        task = service.start_simulation(order, requested_by=x_partner_id)
        return {"success": True, "message": "Simulation started", "durationSeconds": task.duration}

    @app.post("/tracking/stop/{order}")
    def stop_simulation(order: str, x_partner_id: Optional[str] = Header(None)):
        if service.stop_simulation(order, requested_by=x_partner_id):
            return {"success": True, "message": "Simulation stopped"}
        return {"success": True, "message": "Simulation was not running"}

    @app.post("/tracking/start-auto-update/{order}")
    def start_auto_update(order: str, x_partner_id: Optional[str] = Header(None)):
        partner_id = _require_partner(x_partner_id)
        task = service.start_auto_update(order, partner_id)
        return {"success": True, "message": "Auto-update started", "intervalSeconds": task.interval}

    @app.post("/tracking/stop-auto-update/{order}")
    def stop_auto_update(order: str, x_partner_id: Optional[str] = Header(None)):
        if service.stop_auto_update(order, requested_by=x_partner_id):
            return {"success": True, "message": "Auto-update stopped"}
        return {"success": True, "message": "Auto-update was not running"}

    @app.post("/tracking/driver-status")
    def driver_status(body: DriverStatusRequest, x_partner_id: Optional[str] = Header(None)):
        partner_id = _require_partner(x_partner_id)
        service.set_availability(partner_id, body.isOnline, body.lat, body.lng)
        state = "online" if body.isOnline else "offline"
        return {"success": True, "message": f"Driver {state}"}

    @app.post("/orders", status_code=201)
    def place_order(body: PlaceOrderRequest):
        order = service.place_order(
            restaurant_id=body.restaurantId,
            customer_name=body.customerName,
            delivery_address=body.deliveryAddress,
            restaurant_latlng=(body.restaurantLatLng.lat, body.restaurantLatLng.lng) if body.restaurantLatLng else None,
            delivery_latlng=(body.deliveryLatLng.lat, body.deliveryLatLng.lng) if body.deliveryLatLng else None,
            final_amount=body.finalAmount,
        )
        summary = order.summary()
        summary["assignedTo"] = order.assigned_partner_id
        return summary

    @app.patch("/orders/{order}/status")
    def change_status(order: str, body: StatusChangeRequest):
        updated = service.on_order_status_changed(order, body.status)
        return updated.summary()

    @app.get("/partners/rank/{restaurant_id}")
    def rank_partners(restaurant_id: str) -> List[Dict[str, Any]]:
        if service.orders.get_restaurant(restaurant_id) is None:
            raise NotFound(f"Restaurant not found: {restaurant_id}")
        return [candidate.to_dict() for candidate in service.rank_partners(restaurant_id)]

    return app
