#!/usr/bin/env python3
"""Report grouper traffic simulator.

Generates clustered hazard reports: several simulated users report the
same few hazards with slightly different wording and GPS fixes, so the
server should end up with roughly one group per hazard.

Usage:
    # 5 hazards, 4 reporters each, around Lyon
    python -m tools.simulator.simulate --server http://localhost:8000 --hazards 5 --reporters 4

    # Flush the batch at the end instead of waiting for the debounce timer
    python -m tools.simulator.simulate --server http://localhost:8000 --flush

    # Specific location
    python -m tools.simulator.simulate --server http://localhost:8000 --center 48.8566,2.3522
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

# (category, title variants, description variants)
_HAZARD_TEMPLATES = [
    (
        "road_damage",
        ["Large pothole on Main Street", "Pothole on Main St", "Deep pothole near the crossing"],
        ["Deep pothole causing damage to vehicles", "Big hole in the road, tires damaged",
         "Pothole getting bigger, dangerous for bikes"],
    ),
    (
        "lighting",
        ["Broken streetlight", "Street light out", "Streetlight not working"],
        ["The streetlight has been out for a week", "Dark corner, light broken",
         "Street light broken, unsafe at night"],
    ),
    (
        "water",
        ["Flooding on the underpass", "Flooded road", "Water flooding the street"],
        ["Heavy flooding after the rain, road blocked", "Flood water blocking traffic",
         "Road flooded, cars stuck"],
    ),
    (
        "debris",
        ["Fallen tree blocking road", "Tree down on the road", "Debris from a fallen tree"],
        ["A tree fell during the storm and blocks a lane", "Fallen tree and debris on the road",
         "Branches and debris block the road"],
    ),
]


@dataclass
class SimHazard:
    hazard_id: int
    category: str
    titles: list[str]
    descriptions: list[str]
    lat: float
    lon: float
    reports_sent: int = 0
    errors: int = 0


def jitter(lat: float, lon: float, spread_m: float) -> tuple[float, float]:
    """Move a point by up to ``spread_m`` metres in a random direction."""
    angle = random.uniform(0, 2 * math.pi)
    dist = random.uniform(0, spread_m)
    # Approximate: 1 degree latitude ≈ 111,000 m
    dlat = (dist * math.cos(angle)) / 111_000
    dlon = (dist * math.sin(angle)) / (111_000 * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon


def make_report_payload(hazard: SimHazard, spread_m: float, created_at: datetime) -> dict:
    """Create one report JSON payload for ``hazard``."""
    lat, lon = jitter(hazard.lat, hazard.lon, spread_m)
    return {
        "id": f"sim-{uuid.uuid4().hex[:10]}",
        "title": random.choice(hazard.titles),
        "description": random.choice(hazard.descriptions),
        "category": hazard.category,
        "status": "open",
        "priority": random.choices(["medium", "high", "urgent"], weights=[50, 40, 10])[0],
        "created_at": created_at.isoformat(),
        "location": {
            "latitude": round(lat, 6),
            "longitude": round(lon, 6),
            "accuracy_m": random.randint(3, 15),
        },
        "user_id": f"user-{random.randint(1, 500)}",
        "metadata": {"source": "simulator", "hazard_type": hazard.category},
    }


async def run_reporter(
    client: httpx.AsyncClient,
    hazard: SimHazard,
    server_url: str,
    spread_m: float,
    pause_s: float,
) -> None:
    """Send one report for ``hazard`` after a random pause."""
    await asyncio.sleep(random.uniform(0, pause_s))
    created_at = datetime.now(timezone.utc) - timedelta(hours=random.uniform(0, 48))
    payload = make_report_payload(hazard, spread_m, created_at)
    try:
        resp = await client.post(f"{server_url}/api/v1/reports", json=payload)
        if resp.status_code == 202:
            hazard.reports_sent += 1
        else:
            hazard.errors += 1
    except httpx.RequestError:
        hazard.errors += 1


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    center_lat, center_lon = args.center
    hazards = []
    for i in range(args.hazards):
        category, titles, descriptions = _HAZARD_TEMPLATES[i % len(_HAZARD_TEMPLATES)]
        lat, lon = jitter(center_lat, center_lon, args.radius_km * 1000)
        hazards.append(SimHazard(i, category, titles, descriptions, lat, lon))

    print(f"Starting simulation: {args.hazards} hazards, {args.reporters} reporters each")
    print(f"  Center: {center_lat:.4f}, {center_lon:.4f}")
    print(f"  Radius: {args.radius_km} km, GPS spread: {args.spread_m} m")
    print(f"  Server: {args.server}")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as client:
        tasks = [
            run_reporter(client, hazard, args.server, args.spread_m, args.pause)
            for hazard in hazards
            for _ in range(args.reporters)
        ]
        await asyncio.gather(*tasks)

        elapsed = time.monotonic() - start
        total_sent = sum(h.reports_sent for h in hazards)
        total_errors = sum(h.errors for h in hazards)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Reports sent: {total_sent}")
        print(f"  Errors: {total_errors}")

        if args.flush:
            resp = await client.post(f"{args.server}/api/v1/batch/flush")
            if resp.status_code == 200:
                print(f"  Flushed batch: {resp.json()['analyzed']} reports analyzed")

        # Check server state
        try:
            resp = await client.get(f"{args.server}/api/v1/stats")
            if resp.status_code == 200:
                stats = resp.json()
                print("\nServer stats:")
                print(f"  Reports analyzed: {stats['reports_analyzed']}")
                print(f"  Groups created: {stats['groups']['created']}")
                print(f"  Groups extended: {stats['groups']['extended']}")
                print(f"  Review matches: {stats['matches']['review']}")
                print(f"  Pending: {stats['pending_depth']}")
        except httpx.RequestError as exc:
            print(f"\nCould not fetch server stats: {exc}")


def main():
    parser = argparse.ArgumentParser(description="Report grouper traffic simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--hazards", type=int, default=5, help="Number of distinct hazards")
    parser.add_argument("--reporters", type=int, default=4, help="Reports per hazard")
    parser.add_argument("--center", type=str, default="45.764,4.835",
                        help="Center lat,lon (default: Lyon)")
    parser.add_argument("--radius-km", type=float, default=3.0, help="Hazard scatter radius in km")
    parser.add_argument("--spread-m", type=float, default=30.0,
                        help="GPS spread of reports around each hazard (default: 30 m)")
    parser.add_argument("--pause", type=float, default=2.0,
                        help="Max random pause before each report, in seconds")
    parser.add_argument("--flush", action="store_true", help="Flush the batch when done")

    args = parser.parse_args()

    # Parse center
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
