"""Replay one normalized payment event against the webhook endpoint.

Replays keep the same `raw_event_id`, so the inbox and state checks turn an
already-applied event into a no-op.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for webhook replays."""

    parser = argparse.ArgumentParser(description="Replay a payment provider event.")
    parser.add_argument("--lifecycle-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="change-me")
    parser.add_argument("--ref", required=True, help="payment intent ref held by the resource")
    parser.add_argument("--outcome", required=True, choices=["authorized", "succeeded", "failed", "canceled"])
    parser.add_argument("--event-id", required=True, help="provider event id to replay")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    event = {"ref": args.ref, "outcome": args.outcome, "raw_event_id": args.event_id, "payload": {"replayed": True}}
    if args.dry_run:
        print(json.dumps(event, indent=2))
        return

    resp = httpx.post(
        f"{args.lifecycle_url}/webhooks/payments",
        headers={"x-api-key": args.api_key},
        json=event,
        timeout=10.0,
    )
    print(f"status={resp.status_code}")
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
