"""Enrichment consumer — reads audit and activity events, enriches and persists
them, and publishes aggregation alerts.

Consumes from audit-events and activity-events.  Audit messages are the audit
event itself, with an optional ``meta`` object.  Activity messages carry
``kind: request|response`` plus the request/response fields.  Every
aggregation alert the engine persists is also produced to the alerts topic.

Records are kept in an in-process MemoryStore; embed the Enricher with a
durable Store to keep them.

Usage:
    python -m enricher.main
    python -m enricher.main --bootstrap-servers kafka-1:29092 --config enricher.yml
"""

import argparse
import asyncio
import json
import signal
import sys

from confluent_kafka import Consumer, KafkaError, Producer
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from enricher.config import load_config
from enricher.pipeline import Enricher
from enricher.store import MemoryStore

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down enricher...")
    running = False


signal.signal(signal.SIGINT, _shutdown)
signal.signal(signal.SIGTERM, _shutdown)


def _ensure_topic(bootstrap_servers, topic):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=3, replication_factor=3)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


def _handle(enricher, topic, payload, args):
    meta = payload.pop("meta", None)
    if topic == args.audit_topic:
        enricher.log_audit(payload, meta)
    elif payload.get("kind") == "request":
        enricher.log_activity_request(payload, meta)
    elif payload.get("kind") == "response":
        enricher.log_activity_response(payload, meta)
    else:
        raise ValueError(f"activity message without kind request|response: {payload}")


async def _consume(args, consumer, producer, enricher, stats):
    loop = asyncio.get_running_loop()
    while running:
        # poll() blocks; keep the event loop free for dispatched units.
        msg = await loop.run_in_executor(None, consumer.poll, 1.0)
        if msg is None:
            continue
        if msg.error():
            if msg.error().code() == KafkaError._PARTITION_EOF:
                continue
            print(f"Consumer error: {msg.error()}", file=sys.stderr)
            continue

        try:
            payload = json.loads(msg.value().decode("utf-8"))
            _handle(enricher, msg.topic(), payload, args)
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            stats["rejected"] += 1
            print(f"Rejected message from {msg.topic()}: {e}", file=sys.stderr)
            continue
        stats["consumed"] += 1

        if stats["consumed"] % 1000 == 0:
            producer.flush()

        if stats["consumed"] % 500 == 0:
            print(f"  ... {stats['consumed']} events consumed, "
                  f"{stats['alerts']} alerts produced, "
                  f"{enricher.dispatcher.dropped} dropped")

    await enricher.flush()


def main():
    parser = argparse.ArgumentParser(description="Enrichment consumer")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--audit-topic", default="audit-events")
    parser.add_argument("--activity-topic", default="activity-events")
    parser.add_argument("--output-topic", default="alerts")
    parser.add_argument("--group-id", default="enricher")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--metrics-port", type=int, default=9100)
    args = parser.parse_args()

    config = load_config(args.config)
    _ensure_topic(args.bootstrap_servers, args.output_topic)
    start_http_server(args.metrics_port)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.audit_topic, args.activity_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})
    stats = {"consumed": 0, "rejected": 0, "alerts": 0}

    def on_alert(alert):
        producer.produce(
            args.output_topic,
            key=alert["entity_value"],
            value=json.dumps(alert).encode("utf-8"),
        )
        stats["alerts"] += 1
        print(f"ALERT  rule={alert['rule_id']:<20s} "
              f"{alert['entity_property']}={alert['entity_value']}  "
              f"count={alert['count']}/{alert['threshold']}")

    def on_error(err, record):
        print(f"Persistence error: {err}", file=sys.stderr)

    enricher = Enricher(MemoryStore(), config=config, on_alert=on_alert, on_error=on_error)

    print(f"Enrichment consumer started  input={args.audit_topic},{args.activity_topic}  "
          f"output={args.output_topic}  event_rules={len(enricher.rules.event_rules)}  "
          f"aggregation_rules={len(enricher.rules.aggregation_rules)}  "
          f"metrics=:{args.metrics_port}")

    try:
        asyncio.run(_consume(args, consumer, producer, enricher, stats))
    finally:
        producer.flush()
        consumer.close()
        print(f"Done. {stats['consumed']} events consumed, {stats['rejected']} rejected, "
              f"{stats['alerts']} alerts produced.")


if __name__ == "__main__":
    main()
