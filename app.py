"""
LiveTrack Dispatch - Operations Console
======================================

Dashboard for watching partner assignment and live delivery tracking.

Features:
- Place orders and see which partner the assignment engine picked
- Live map of partners, restaurants and order positions (pydeck)
- Start/stop simulated trips for orders without device telemetry
- Admin event feed (order created / status changes)
- Trip replay with a time slider
"""

import os
import sys
from typing import Dict, Any, List, Optional

import pandas as pd
import pydeck as pdk
import streamlit as st

# Ensure livetrack is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from livetrack import config
from livetrack.broadcaster import RecentEventsSink
from livetrack.errors import TrackingError
from livetrack.models import Order, OrderStatus
from livetrack.service import TrackingService
from livetrack.simulator import SimulationTask

# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="LiveTrack Dispatch",
    page_icon="🛵",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    .main .block-container {
        padding-top: 2rem;
        padding-bottom: 2rem;
    }

    .section-header {
        font-size: 1.5rem;
        font-weight: 700;
        color: #1a1a2e;
        margin: 2rem 0 1rem 0;
        padding-bottom: 0.5rem;
        border-bottom: 3px solid #667eea;
    }

    .event-feed {
        padding: 0.75rem;
        background: #0f172a;
        color: #e2e8f0;
        border-radius: 12px;
        font-family: monospace;
        font-size: 0.85rem;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)

# =============================================================================
# SERVICE
# =============================================================================

DATASETS: Dict[str, Dict[str, str]] = {
    "Chennai (10 partners, 6 restaurants)": {
        "partners": "data/chennai_partners.csv",
        "restaurants": "data/chennai_restaurants.csv",
    },
}

STATUS_COLORS = {
    OrderStatus.PENDING: [251, 191, 36],
    OrderStatus.CONFIRMED: [59, 130, 246],
    OrderStatus.PREPARING: [139, 92, 246],
    OrderStatus.OUT_FOR_DELIVERY: [16, 185, 129],
    OrderStatus.DELIVERED: [100, 116, 139],
    OrderStatus.CANCELLED: [239, 68, 68],
}

MAX_FEED_EVENTS = 50


def get_available_datasets() -> Dict[str, Dict[str, str]]:
    """Return only datasets that exist on disk."""
    available = {}
    for name, paths in DATASETS.items():
        if os.path.exists(paths["partners"]) and os.path.exists(paths["restaurants"]):
            available[name] = paths
    return available


@st.cache_resource(show_spinner=False)
def get_service(partner_file: str, restaurant_file: str, duration: float) -> TrackingService:
    """One long-lived service per dataset/trip length; simulations run in background threads."""
    service = TrackingService(simulation_duration=duration)
    service.registry.load_csv(partner_file)
    service.orders.load_restaurants_csv(restaurant_file)
    return service


@st.cache_resource(show_spinner=False)
def admin_feed(_service: TrackingService, service_key: int) -> RecentEventsSink:
    """One admin subscription per service, shared by every browser session."""
    feed = RecentEventsSink(MAX_FEED_EVENTS)
    _service.subscribe_admin(feed)
    return feed


# =============================================================================
# MAP VISUALIZATION
# =============================================================================

def partner_layer(service: TrackingService) -> pdk.Layer:
    data = []
    for p in service.registry.all():
        if p.location is None:
            continue
        data.append({
            "position": [p.location.lng, p.location.lat],
            "color": [16, 185, 129] if p.is_available else [148, 163, 184],
            "label": f"{p.partner_id} {p.name} ({p.active_orders} active)",
        })
    return pdk.Layer(
        "ScatterplotLayer",
        data,
        get_position="position",
        get_fill_color="color",
        get_radius=120,
        pickable=True,
        stroked=True,
        filled=True,
        line_width_min_pixels=1,
    )


def restaurant_layer(service: TrackingService) -> pdk.Layer:
    data = [
        {
            "position": [r.location.lng, r.location.lat],
            "color": [245, 87, 108],
            "label": r.name,
        }
        for r in service.orders.restaurants()
        if r.location is not None
    ]
    return pdk.Layer(
        "ScatterplotLayer",
        data,
        get_position="position",
        get_fill_color="color",
        get_radius=160,
        opacity=0.7,
        pickable=True,
    )


def order_layers(service: TrackingService, orders: List[Order]) -> List[pdk.Layer]:
    """Trip lines (restaurant -> customer) and the latest position of each order."""
    trips, positions = [], []
    for o in orders:
        color = STATUS_COLORS.get(o.status, [148, 163, 184])
        if o.restaurant_point and o.delivery_point:
            trips.append({
                "source": [o.restaurant_point.lng, o.restaurant_point.lat],
                "target": [o.delivery_point.lng, o.delivery_point.lat],
                "color": color,
                "label": f"Order {o.code}",
            })
        sample = service.latest(o.order_id)
        if sample is not None:
            positions.append({
                "position": [sample.lng, sample.lat],
                "color": color,
                "label": f"Order {o.code} · {sample.status.value} · {sample.source_partner_id}",
            })
    return [
        pdk.Layer(
            "LineLayer",
            trips,
            get_source_position="source",
            get_target_position="target",
            get_color="color",
            get_width=3,
            pickable=True,
        ),
        pdk.Layer(
            "ScatterplotLayer",
            positions,
            get_position="position",
            get_fill_color="color",
            get_radius=100,
            pickable=True,
        ),
    ]


def render_map(layers: List[pdk.Layer]) -> None:
    view_state = pdk.ViewState(latitude=config.DEFAULT_CITY_LAT, longitude=config.DEFAULT_CITY_LNG, zoom=11)
    st.pydeck_chart(pdk.Deck(layers=layers, initial_view_state=view_state, tooltip={"text": "{label}"}))


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar() -> Optional[TrackingService]:
    """Render sidebar controls and return the active service."""
    st.sidebar.markdown("## 🎛️ Configuration")
    st.sidebar.markdown("---")

    available = get_available_datasets()
    if not available:
        st.sidebar.error("No datasets found in data/ folder!")
        st.sidebar.info("Please ensure CSV files are present in the data/ directory.")
        return None

    dataset = st.sidebar.selectbox("Dataset", list(available.keys()))
    duration = st.sidebar.slider(
        "Simulated trip length (seconds)",
        min_value=10,
        max_value=300,
        value=int(config.SIMULATION_DURATION_SECONDS),
        step=10,
        help="Time from leaving the restaurant to reaching the customer"
    )

    try:
        paths = available[dataset]
        service = get_service(paths["partners"], paths["restaurants"], float(duration))
    except (OSError, ValueError) as e:
        st.sidebar.error(f"Failed to load data: {e}")
        return None

    st.sidebar.markdown("---")
    st.sidebar.markdown("### 🧾 Place Order")
    restaurants = service.orders.restaurants()
    with st.sidebar.form("place_order"):
        restaurant = st.selectbox(
            "Restaurant",
            restaurants,
            format_func=lambda r: f"{r.name} ({r.restaurant_id})",
        )
        customer = st.text_input("Customer", "Walk-in customer")
        address = st.text_input("Delivery address", "Besant Nagar, Chennai")
        lat = st.number_input("Delivery lat", value=13.0003, format="%.5f")
        lng = st.number_input("Delivery lng", value=80.2667, format="%.5f")
        amount = st.number_input("Amount", min_value=0.0, value=450.0, step=10.0)
        if st.form_submit_button("🚀 Place Order", use_container_width=True):
            try:
                order = service.place_order(
                    restaurant.restaurant_id,
                    customer_name=customer,
                    delivery_address=address,
                    delivery_latlng=(lat, lng),
                    final_amount=amount,
                )
                partner = order.assigned_partner_id or "nobody (left pending)"
                st.sidebar.success(f"Order {order.code} assigned to {partner}")
            except TrackingError as e:
                st.sidebar.error(str(e))

    st.sidebar.markdown("---")
    st.sidebar.markdown("### 📖 About")
    st.sidebar.info("""
    Orders go to the nearest available partner within
    the search radius; fewer active orders breaks ties.
    Simulated trips move in a straight line and mark the
    order delivered on arrival.
    """)
    return service


# =============================================================================
# TABS
# =============================================================================

def orders_frame(service: TrackingService, orders: List[Order]) -> pd.DataFrame:
    rows = []
    for o in orders:
        sample = service.latest(o.order_id)
        restaurant = service.orders.get_restaurant(o.restaurant_id)
        rows.append({
            "Order": o.code,
            "Restaurant": restaurant.name if restaurant else o.restaurant_id,
            "Partner": o.assigned_partner_id or "-",
            "Status": o.status.value,
            "Simulating": service.simulator.is_running(o.order_id),
            "Coords": f"{o.restaurant_point.source.value}/{o.delivery_point.source.value}"
            if o.restaurant_point and o.delivery_point else "-",
            "Last Fix": f"{sample.lat:.5f}, {sample.lng:.5f}" if sample else "-",
        })
    return pd.DataFrame(rows)


def render_live_console(service: TrackingService) -> None:
    feed: List[Dict[str, Any]] = [event.to_dict() for event in admin_feed(service, id(service)).recent()]

    orders = service.orders.all()
    partners = service.registry.all()

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Partners Online", sum(1 for p in partners if p.is_available), f"of {len(partners)}")
    col2.metric("Orders", len(orders))
    col3.metric("Unassigned", sum(1 for o in orders if o.assigned_partner_id is None))
    col4.metric("Trips Running", len(service.simulator))

    render_map([restaurant_layer(service), partner_layer(service)] + order_layers(service, orders))

    st.markdown('<div class="section-header">📦 Orders</div>', unsafe_allow_html=True)
    if not orders:
        st.info("No orders yet. Place one from the sidebar.")
    else:
        st.dataframe(orders_frame(service, orders), use_container_width=True, hide_index=True)

        active = [o for o in orders if not o.status.is_terminal]
        if active:
            col1, col2, col3 = st.columns([2, 1, 1])
            with col1:
                selected = st.selectbox("Order", active, format_func=lambda o: f"{o.code} · {o.status.value}")
            with col2:
                if st.button("▶️ Simulate trip", use_container_width=True):
                    try:
                        service.start_simulation(selected.order_id)
                        st.success(f"Simulating order {selected.code}")
                    except TrackingError as e:
                        st.error(str(e))
            with col3:
                if st.button("⏹️ Stop", use_container_width=True):
                    stopped = service.stop_simulation(selected.order_id)
                    st.info("Stopped" if stopped else "Simulation was not running")

    st.button("🔄 Refresh", help="Pull the latest positions and events")

    st.markdown('<div class="section-header">📡 Admin Feed</div>', unsafe_allow_html=True)
    if feed:
        lines = "<br>".join(
            f"{e['type']} · {e['payload'].get('orderId')} · {e['payload'].get('orderStatus')}" for e in feed
        )
        st.markdown(f"<div class='event-feed'>{lines}</div>", unsafe_allow_html=True)
    else:
        st.caption("No events yet.")


def replay_frame(order: Order, duration: float, tick: float) -> pd.DataFrame:
    """Positions a simulated trip passes through, one row per tick."""
    task = SimulationTask(
        order_id=order.order_id,
        origin=order.restaurant_point,
        destination=order.delivery_point,
        publish=lambda sample: None,
        on_status=lambda order_id, status: None,
        status_of=lambda: None,
        duration=duration,
        tick_interval=tick,
        threaded=False,
    )
    steps = int(duration // tick) + 1
    rows = []
    for i in range(steps):
        t = min(i * tick, duration)
        lat, lng = task.position_at(t)
        rows.append({"t": t, "lat": lat, "lng": lng})
    return pd.DataFrame(rows)


def render_trip_replay(service: TrackingService) -> None:
    orders = [o for o in service.orders.all() if o.restaurant_point and o.delivery_point]
    if not orders:
        st.info("Place an order to replay its trip.")
        return

    order = st.selectbox("Order to replay", orders, format_func=lambda o: f"{o.code} · {o.customer_name}")
    duration = service.simulator.duration
    frame = replay_frame(order, duration, service.simulator.tick_interval)

    t = st.slider("Seconds since pickup", 0.0, float(duration), 0.0, step=float(service.simulator.tick_interval))
    travelled = frame[frame["t"] <= t]
    current = travelled.iloc[-1]

    col1, col2 = st.columns([1, 1])
    with col1:
        st.markdown(f"**Position:** {current['lat']:.5f}, {current['lng']:.5f}")
    with col2:
        progress = t / duration if duration > 0 else 1.0
        st.progress(min(1.0, progress), text=f"{progress:.0%} of the trip")

    path = [{"path": travelled[["lng", "lat"]].values.tolist(), "label": f"Order {order.code}"}]
    layers = [
        pdk.Layer("PathLayer", path, get_path="path", get_color=[59, 130, 246], width_min_pixels=4),
        pdk.Layer(
            "ScatterplotLayer",
            [{"position": [current["lng"], current["lat"]], "label": f"t={t:.0f}s"}],
            get_position="position",
            get_fill_color=[16, 185, 129],
            get_radius=120,
            pickable=True,
        ),
        restaurant_layer(service),
    ]
    render_map(layers)

    st.markdown("#### Samples")
    st.dataframe(frame, use_container_width=True, hide_index=True)


def main():
    """Main application entry point."""
    st.markdown("""
    <div style="text-align: center; padding: 1rem 0 2rem 0;">
        <h1 style="font-size: 3rem; font-weight: 800; background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); -webkit-background-clip: text; -webkit-text-fill-color: transparent; margin-bottom: 0.5rem;">
            LiveTrack Dispatch
        </h1>
        <p style="font-size: 1.2rem; color: #666; max-width: 700px; margin: 0 auto;">
            Nearest-Partner Assignment & Live Delivery Tracking
        </p>
    </div>
    """, unsafe_allow_html=True)

    service = render_sidebar()
    if service is None:
        return

    live, replay, ranking = st.tabs(["🗺️ Live Console", "⏪ Trip Replay", "🏁 Candidate Ranking"])
    with live:
        render_live_console(service)
    with replay:
        render_trip_replay(service)
    with ranking:
        restaurant = st.selectbox(
            "Restaurant",
            service.orders.restaurants(),
            format_func=lambda r: f"{r.name} ({r.restaurant_id})",
            key="rank_restaurant",
        )
        ranked = service.rank_partners(restaurant.restaurant_id)
        if ranked:
            st.dataframe(pd.DataFrame([c.to_dict() for c in ranked]), use_container_width=True, hide_index=True)
        else:
            st.warning("No available partner within range.")

    st.markdown("---")
    st.markdown("""
    <div style="text-align: center; color: #888; padding: 1rem;">
        LiveTrack Dispatch | Operations Console
    </div>
    """, unsafe_allow_html=True)


if __name__ == "__main__":
    main()
