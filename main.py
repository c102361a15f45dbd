#!/usr/bin/env python3
# livetrack-dispatch/main.py
"""
Command-Line Interface for the LiveTrack assignment and tracking service.

Runs the service without the dashboard: a quick end-to-end demo, a ranking
of candidate partners for one restaurant, or the HTTP/SSE server.

Usage:
    python main.py demo                         # Place orders, simulate one trip
    python main.py demo --orders 10 --duration 20
    python main.py rank --restaurant r01        # Rank partners for a restaurant
    python main.py serve --port 8000            # Start the HTTP/SSE server

Exit Codes:
    0: Success
    1: Data loading error
    2: Simulation error
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import sys
from typing import Dict, List, Any, Optional

# Ensure the livetrack package is importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from livetrack import config
from livetrack.broadcaster import QueueSink
from livetrack.errors import TrackingError
from livetrack.models import EventType, Order
from livetrack.service import TrackingService
from livetrack.utils import default_city_point

logger = logging.getLogger("livetrack.cli")


# Available datasets
DATASETS: Dict[str, Dict[str, str]] = {
    "chennai": {
        "partners": "data/chennai_partners.csv",
        "restaurants": "data/chennai_restaurants.csv",
        "description": "10 partners and 6 restaurants around central Chennai"
    },
}


def print_header() -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  LIVETRACK - Delivery Partner Assignment & Tracking")
    print("  Nearest-Available Dispatch with Live Position Streams")
    print("=" * 60 + "\n")


def print_assignment_table(service: TrackingService, orders: List[Order]) -> None:
    """
    Print which partner each order went to, and how far away they were.

    Args:
        service: Service the orders were placed on
        orders: Orders as returned by place_order
    """
    print("\n" + "=" * 60)
    print("  ASSIGNMENTS")
    print("=" * 60 + "\n")

    print(f"| {'Order':<8} | {'Restaurant':<28} | {'Partner':<8} | {'Status':<10} |")
    print("|" + "-" * 10 + "|" + "-" * 30 + "|" + "-" * 10 + "|" + "-" * 12 + "|")

    for order in orders:
        restaurant = service.orders.get_restaurant(order.restaurant_id)
        name = restaurant.name if restaurant else str(order.restaurant_id)
        partner = order.assigned_partner_id or "-"
        print(f"| {order.code:<8} | {name[:28]:<28} | {partner:<8} | {order.status.value:<10} |")

    assigned = sum(1 for o in orders if o.assigned_partner_id)
    print(f"\n  {assigned}/{len(orders)} orders assigned")

    # Workload after assignment
    busy = [p for p in service.registry.all() if p.active_orders > 0]
    for partner in busy:
        print(f"  {partner.partner_id} ({partner.name}): {partner.active_orders} active")
    print("=" * 60 + "\n")


def load_data_safe(service: TrackingService, dataset_name: str) -> bool:
    """
    Seed the service with graceful error handling.

    Args:
        service: Service to seed
        dataset_name: Key from DATASETS dictionary

    Returns:
        True if both files were loaded
    """
    if dataset_name not in DATASETS:
        print(f"ERROR: Unknown dataset '{dataset_name}'")
        print(f"Available datasets: {', '.join(DATASETS.keys())}")
        return False

    dataset = DATASETS[dataset_name]
    for key in ("partners", "restaurants"):
        if not os.path.exists(dataset[key]):
            print(f"ERROR: {key.title()} file not found: {dataset[key]}")
            print("Please ensure the data/ directory contains the required CSV files.")
            return False

    try:
        partners = service.registry.load_csv(dataset["partners"])
        restaurants = service.orders.load_restaurants_csv(dataset["restaurants"])
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load data: {e}")
        return False

    print(f"Loaded {partners} partners and {restaurants} restaurants from '{dataset_name}' dataset")
    return True


def place_demo_orders(service: TrackingService, count: int, seed: int) -> List[Order]:
    """
    Place `count` orders round-robin across restaurants, delivering to a
    random point within ~3 km of each restaurant.
    """
    rng = random.Random(seed)
    restaurants = service.orders.restaurants()
    placed = []
    for i in range(count):
        restaurant = restaurants[i % len(restaurants)]
        base = restaurant.location or default_city_point()
        delivery = (base.lat + rng.uniform(-0.03, 0.03), base.lng + rng.uniform(-0.03, 0.03))
        order = service.place_order(
            restaurant.restaurant_id,
            customer_name=f"Customer {i + 1}",
            delivery_latlng=delivery,
            final_amount=round(rng.uniform(150, 900), 2),
        )
        placed.append(order)
    return placed


def simulate_trip_safe(service: TrackingService, order: Order, verbose: bool = False) -> Optional[Dict[str, Any]]:
    """
    Simulate one trip to completion while listening on its order channel.

    Returns:
        Trip summary, or None on error
    """
    sink = QueueSink(maxsize=10_000)
    subscription = service.subscribe_order(order.order_id, sink)
    try:
        task = service.start_simulation(order.order_id)
        print(f"\n[SIMULATION] Order {order.code}: {task.duration:.0f}s trip, one sample every {task.tick_interval:g}s")
        task.join(task.duration + 5 * task.tick_interval)
    except TrackingError as e:
        print(f"ERROR: Simulation failed for order {order.code}: {e}")
        return None
    finally:
        service.unsubscribe(subscription)

    events = sink.drain()
    locations = [e for e in events if e.type is EventType.LOCATION]
    if verbose:
        for event in locations:
            p = event.payload
            print(f"  {p['updatedAt']}  ({p['lat']:.5f}, {p['lng']:.5f})  {p['status']}")

    final = service.orders.get(order.order_id)
    return {
        "Order": final.code,
        "Samples": len(locations),
        "Status Events": len(events) - len(locations),
        "Final Status": final.status.value,
        "State": task.state.value,
    }


def run_demo(args: argparse.Namespace) -> int:
    service = TrackingService(
        use_geocoding=args.geocode,
        simulation_duration=args.duration,
        tick_interval=args.tick,
    )
    try:
        if not load_data_safe(service, args.dataset):
            return 1

        orders = place_demo_orders(service, args.orders, args.seed)
        print_assignment_table(service, orders)

        assigned = [o for o in orders if o.assigned_partner_id]
        if not assigned:
            print("ERROR: No order was assigned; nothing to simulate")
            return 2

        summary = simulate_trip_safe(service, assigned[0], verbose=args.verbose)
        if summary is None:
            return 2

        print("\n" + "-" * 40)
        for key, value in summary.items():
            print(f"  {key:<15} {value}")
        print("-" * 40 + "\n")
        return 0
    finally:
        service.shutdown()


def run_rank(args: argparse.Namespace) -> int:
    service = TrackingService(use_geocoding=False)
    if not load_data_safe(service, args.dataset):
        return 1
    if service.orders.get_restaurant(args.restaurant) is None:
        print(f"ERROR: Unknown restaurant '{args.restaurant}'")
        return 1

    ranked = service.rank_partners(args.restaurant)
    print(f"\nCandidates for {args.restaurant} (radius {config.SEARCH_RADIUS_KM:g} km):")
    print("-" * 50)
    for i, candidate in enumerate(ranked, 1):
        distance = "unknown" if candidate.to_dict()["distanceKm"] is None else f"{candidate.distance_km:.2f} km"
        print(f"  {i:2}. {candidate.partner_id:<5} {candidate.partner.name:<22} {distance:>10}  active={candidate.active_orders}")
    if not ranked:
        print("  (no available partner)")
    return 0


def run_server(args: argparse.Namespace) -> int:
    import uvicorn

    from livetrack.api import create_app

    service = TrackingService()
    if args.dataset and not load_data_safe(service, args.dataset):
        return 1
    uvicorn.run(create_app(service), host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def main() -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="LiveTrack Dispatch CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py demo                          # Default: chennai, 6 orders, 120s trip
  python main.py demo --duration 10 --verbose  # Short trip, print every sample
  python main.py rank --restaurant r04         # Who would get an order from r04?
  python main.py serve --port 8000             # HTTP + SSE endpoints
        """
    )

    parser.add_argument(
        "--log-level",
        default=config.LOG_LEVEL,
        help=f"Logging level (default: {config.LOG_LEVEL})"
    )

    parser.add_argument(
        "--dataset", "-d",
        type=str,
        default="chennai",
        help=f"Dataset to seed from (default: chennai). Options: {', '.join(DATASETS.keys())}"
    )

    subparsers = parser.add_subparsers(dest="command")

    demo = subparsers.add_parser("demo", help="Place orders and simulate one delivery")
    demo.add_argument("--orders", "-n", type=int, default=6, help="Number of orders to place")
    demo.add_argument("--duration", type=float, default=None, help="Trip length in seconds")
    demo.add_argument("--tick", type=float, default=None, help="Seconds between samples")
    demo.add_argument("--seed", type=int, default=42, help="Random seed for delivery points")
    demo.add_argument("--geocode", action="store_true", help="Geocode restaurants without coordinates")
    demo.add_argument("--verbose", "-v", action="store_true", help="Print every position sample")

    rank = subparsers.add_parser("rank", help="Rank candidate partners for a restaurant")
    rank.add_argument("--restaurant", "-r", required=True, help="Restaurant id")

    serve = subparsers.add_parser("serve", help="Run the HTTP/SSE server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    if args.command != "serve":
        print_header()

    if args.command == "demo":
        return run_demo(args)
    if args.command == "rank":
        return run_rank(args)
    return run_server(args)


if __name__ == "__main__":
    sys.exit(main())
