"""Print a resource's audit trail for dispute review."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for audit trail lookups."""

    parser = argparse.ArgumentParser(description="Fetch the ordered audit trail of one resource.")
    parser.add_argument("--lifecycle-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="change-me")
    parser.add_argument("--admin-id", required=True)
    parser.add_argument("--kind", choices=["delivery", "rental"], required=True)
    parser.add_argument("--id", dest="resource_id", required=True)
    parser.add_argument("--json", action="store_true", help="print raw JSON instead of one line per event")
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.lifecycle_url}/{args.kind}s/{args.resource_id}/events",
        headers={"x-api-key": args.api_key, "x-actor-role": "admin", "x-actor-id": args.admin_id},
        timeout=10.0,
    )
    resp.raise_for_status()
    events = resp.json()
    if args.json:
        print(json.dumps(events, indent=2))
        return
    for event in events:
        actor = event["actor_id"] or event["actor_role"]
        print(f"{event['occurred_at']}  {event['event_type']:<28} {actor:<20} {json.dumps(event['payload'])}")


if __name__ == "__main__":
    main()
