"""Poll providers for orders whose payment has been pending too long.

Lists stale pending orders from the engine and asks it to reconcile each one
against its provider's status endpoint.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for provider status reconciliation."""

    parser = argparse.ArgumentParser(description="Reconcile stale pending payments against provider status.")
    parser.add_argument("--engine-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--older-than-minutes", type=int, default=15)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key, "x-admin-id": "reconcile-script"}
    with httpx.Client(base_url=args.engine_url, headers=headers, timeout=10.0) as client:
        resp = client.get(
            "/admin/orders/pending-payments",
            params={"older_than_minutes": args.older_than_minutes, "limit": args.limit},
        )
        resp.raise_for_status()
        orders = resp.json()
        print(f"{len(orders)} stale pending order(s)")
        results = {}
        for order in orders:
            order_id = order["order_id"]
            if args.dry_run:
                results[order_id] = {"provider": order.get("payment_provider"), "skipped": "dry-run"}
                continue
            resp = client.post(f"/admin/orders/{order_id}/reconcile")
            results[order_id] = resp.json() if resp.status_code < 500 else {"error": resp.text}
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
