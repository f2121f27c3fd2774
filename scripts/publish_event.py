"""Publish one engine notification event straight to Kafka.

Wraps the payload in the same `EventEnvelope` the outbox publisher ships, so
notification consumers can be exercised without driving a real order.
"""

import argparse
import asyncio
import json
from pathlib import Path
from uuid import uuid4

from digipay.common.events import EventEnvelope, KafkaBus

TOPICS = (
    "payment.created",
    "payment.discrepancy",
    "payment.failed",
    "delivery.completed",
    "delivery.failed",
    "delivery.manual_required",
    "order.rejected",
)


async def publish(bootstrap_servers: str, topic: str, order_id: str, payload: dict) -> EventEnvelope:
    """Open producer, publish one envelope, close producer."""

    bus = KafkaBus(bootstrap_servers)
    event = EventEnvelope(event_type=topic, aggregate_id=order_id, trace_id=str(uuid4()), payload=payload)
    try:
        await bus.publish(topic, event)
    finally:
        await bus.close()
    return event


def main() -> None:
    """Parse CLI args and publish one envelope."""

    parser = argparse.ArgumentParser(description="Publish an engine notification event to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", required=True, choices=TOPICS)
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    args = parser.parse_args()

    if args.json_inline and args.json_file:
        raise SystemExit("Provide at most one of --json or --file")
    payload = {}
    if args.json_inline:
        payload = json.loads(args.json_inline)
    elif args.json_file:
        payload = json.loads(Path(args.json_file).read_text())

    event = asyncio.run(publish(args.bootstrap_servers, args.topic, args.order_id, payload))
    print(f"Published event_id={event.event_id} to topic={args.topic}")


if __name__ == "__main__":
    main()
