"""Re-trigger delivery for paid orders still waiting on fulfilment.

Manual-delivery products are skipped: they need an admin to supply content.
"""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for bulk redelivery."""

    parser = argparse.ArgumentParser(description="Redeliver paid orders with pending or failed delivery.")
    parser.add_argument("--engine-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--include-manual", action="store_true")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key, "x-admin-id": "redeliver-script"}
    with httpx.Client(base_url=args.engine_url, headers=headers, timeout=30.0) as client:
        resp = client.get("/admin/orders/pending-deliveries", params={"limit": args.limit})
        resp.raise_for_status()
        results = {}
        for order in resp.json():
            if order.get("delivery_type") == "manual" and not args.include_manual:
                continue
            resp = client.post(f"/admin/orders/{order['order_id']}/redeliver")
            results[order["order_id"]] = resp.json() if resp.status_code < 500 else {"error": resp.text}
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
