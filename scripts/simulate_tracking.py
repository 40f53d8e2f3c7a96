#!/usr/bin/env python3
"""
Simulate a technician driving toward a client's location.

Usage:
    python3 scripts/simulate_tracking.py <request_id> [<session_id>]

The script:
  1. Reads the request's location through the API.
  2. Places the technician 3 km south and moves them toward the client.
  3. Posts a location report every 2 seconds (20 steps, about 40 s total),
     attached to the session when one is given so history is recorded.

Environment variables:
    DISPATCH_API_URL           -- default http://localhost:8000/api/v1
    DISPATCH_TECHNICIAN_TOKEN  -- bearer token of the assigned technician
"""

import asyncio
import math
import os
import sys
from datetime import datetime, timezone

import httpx
from dotenv import load_dotenv

load_dotenv()

# --- Config -----------------------------------------------------------------

NUM_STEPS = 20
STEP_INTERVAL_S = 2.0
OFFSET_KM = 3.0  # Start 3 km away

API_URL = os.getenv("DISPATCH_API_URL", "http://localhost:8000/api/v1")
TOKEN = os.getenv("DISPATCH_TECHNICIAN_TOKEN", "")


# --- Helpers ----------------------------------------------------------------

def offset_lat(lat: float, km: float) -> float:
    """Shift latitude by ~km (1 degree is about 111 km)."""
    return lat - km / 111.0


def interpolate(start: tuple[float, float], end: tuple[float, float], t: float):
    """Linear interpolation between two (lat, lng) points."""
    return (
        start[0] + (end[0] - start[0]) * t,
        start[1] + (end[1] - start[1]) * t,
    )


# --- Main -------------------------------------------------------------------

async def main():
    if len(sys.argv) < 2:
        print("usage: simulate_tracking.py <request_id> [<session_id>]")
        sys.exit(1)
    if not TOKEN:
        print("DISPATCH_TECHNICIAN_TOKEN is not set")
        sys.exit(1)

    request_id = sys.argv[1]
    session_id = sys.argv[2] if len(sys.argv) > 2 else None

    headers = {"Authorization": f"Bearer {TOKEN}"}
    async with httpx.AsyncClient(base_url=API_URL, headers=headers, timeout=10.0) as client:
        resp = await client.get(f"/requests/{request_id}")
        if resp.status_code != 200:
            print(f"Request {request_id} not readable: {resp.status_code} {resp.text}")
            sys.exit(1)
        request = resp.json()

        client_lat = float(request["location_lat"])
        client_lng = float(request["location_lng"])
        print(f"Client: ({client_lat:.6f}, {client_lng:.6f})")

        start_lat = offset_lat(client_lat, OFFSET_KM)
        start_lng = client_lng + 0.005
        print(f"Technician start: ({start_lat:.6f}, {start_lng:.6f})")
        print(f"Moving in {NUM_STEPS} steps, {STEP_INTERVAL_S}s each\n")

        start = (start_lat, start_lng)
        end = (client_lat, client_lng)

        for i in range(NUM_STEPS + 1):
            t = i / NUM_STEPS
            lat, lng = interpolate(start, end, t)

            body = {
                "lat": round(lat, 7),
                "lng": round(lng, 7),
                "accuracy": 8.0,
                "speed": 8.3,
                "reported_at": datetime.now(timezone.utc).isoformat(),
            }
            if session_id:
                body["session_id"] = session_id
            resp = await client.post("/location", json=body)
            result = resp.json() if resp.status_code == 200 else {"error": resp.text}

            remaining_km = math.sqrt(
                ((client_lat - lat) * 111) ** 2
                + ((client_lng - lng) * 111 * math.cos(math.radians(lat))) ** 2
            )
            bar = "#" * int(t * 30) + "." * (30 - int(t * 30))
            print(
                f"  [{bar}] {t*100:5.1f}%  "
                f"({lat:.6f}, {lng:.6f})  "
                f"{remaining_km:.2f} km left  {result}"
            )

            if i < NUM_STEPS:
                await asyncio.sleep(STEP_INTERVAL_S)

    print("\nTechnician has arrived at the client location.")


if __name__ == "__main__":
    asyncio.run(main())
