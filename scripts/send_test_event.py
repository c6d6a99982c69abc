#!/usr/bin/env python3
"""
Send signed test events to a running gateway.

Usage:
    python scripts/send_test_event.py single
    python scripts/send_test_event.py batch 50
    python scripts/send_test_event.py health
    python scripts/send_test_event.py stats

Environment:
    HMAC_SECRET   signing secret shared with the gateway
    BASE_URL      gateway base URL (default http://localhost:3000)
"""
import asyncio
import json
import os
import sys
import time
import uuid
import argparse
from datetime import datetime, timezone

import httpx

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from utils.signing import compute_signature  # noqa: E402

DEFAULT_SECRET = "your-super-secret-key-change-in-production"


def build_event(index: int = 0, event_type: str = "ORDER_CREATED") -> dict:
    return {
        "eventId": str(uuid.uuid4()),
        "type": event_type,
        "payload": {
            "orderId": f"order-{index}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


async def send_event(client: httpx.AsyncClient, event: dict, secret: str, verbose: bool = True) -> int:
    body = json.dumps(event).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-HMAC-Signature": compute_signature(body, secret),
    }
    response = await client.post("/events", content=body, headers=headers)
    if verbose:
        print(f"Sent {event['eventId']} → {response.status_code} {response.text}")
    return response.status_code


async def send_batch(client: httpx.AsyncClient, count: int, secret: str):
    print(f"Sending {count} events...")
    started = time.perf_counter()
    statuses = await asyncio.gather(*(
        send_event(client, build_event(i), secret, verbose=False) for i in range(count)
    ))
    duration_ms = (time.perf_counter() - started) * 1000
    accepted = sum(1 for s in statuses if s == 202)
    print(f"Sent {count} events in {duration_ms:.0f}ms ({accepted} accepted)")
    print(f"Average: {duration_ms / max(count, 1):.2f}ms per event")


async def run(args) -> int:
    async with httpx.AsyncClient(base_url=args.base_url, timeout=10.0) as client:
        if args.command == "single":
            status = await send_event(client, build_event(), args.secret)
            return 0 if status == 202 else 1
        if args.command == "batch":
            await send_batch(client, args.count, args.secret)
            return 0
        path = "/health" if args.command == "health" else "/events/stats"
        response = await client.get(path)
        print(json.dumps(response.json(), indent=2))
        return 0 if response.is_success else 1


def main():
    parser = argparse.ArgumentParser(description="Send signed test events")
    parser.add_argument("command", nargs="?", default="single",
                        choices=["single", "batch", "health", "stats"])
    parser.add_argument("count", nargs="?", type=int, default=10, help="Events to send in batch mode")
    parser.add_argument("--base-url", default=os.environ.get("BASE_URL", "http://localhost:3000"))
    parser.add_argument("--secret", default=os.environ.get("HMAC_SECRET", DEFAULT_SECRET))
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
