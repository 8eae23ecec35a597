"""Audit and activity event generator.

Simulates application traffic with configurable normal and suspicious user
profiles.  Audit events go to the audit topic; AI activity request/response
pairs (with a fraction of orphaned responses) go to the activity topic.

Usage:
    python producer.py
    python producer.py --normal 20 --brute-forcers 2 --exporters 1
    python producer.py --eps 100 --audit-topic audit-events
"""

import argparse
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

APPS = ["billing", "crm", "reports", "admin-console"]
NORMAL_ACTIONS = ["view", "search", "update", "create", "logout"]
MODELS = ["model-small", "model-medium", "model-large"]
PROVIDERS = ["provider-a", "provider-b"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination


# ---------------------------------------------------------------------------
# User profiles
# ---------------------------------------------------------------------------

@dataclass
class User:
    user_id: str
    app_id: str
    tenant_id: str
    role: str  # normal | brute_forcer | exporter
    events_per_min: float
    ip: str
    machine: str
    failure_rate: float  # fraction of logins that fail
    export_rate: float   # fraction of events that are exports
    activity_rate: float  # fraction of events that start an AI activity


def _create_users(n_normal, n_brute_forcers, n_exporters):
    """Build the user pool. Each user gets a stable app, tenant, ip and machine."""
    users = []
    uid = 0
    tenants = [f"tenant_{i:02d}" for i in range(1, 4)]

    def _user(role, epm, failure_rate, export_rate, activity_rate):
        nonlocal uid
        uid += 1
        return User(
            user_id=f"user_{uid:04d}", app_id=random.choice(APPS),
            tenant_id=random.choice(tenants), role=role, events_per_min=epm,
            ip=f"10.0.{random.randint(0, 255)}.{random.randint(1, 254)}",
            machine=f"host-{uid:03d}",
            failure_rate=failure_rate, export_rate=export_rate,
            activity_rate=activity_rate,
        )

    # --- Normal users: occasional failed login, rare exports ---
    for _ in range(n_normal):
        users.append(_user("normal", random.uniform(5, 60), 0.05, 0.01, 0.1))

    # --- Brute forcers: mostly failing logins, high rate ---
    for _ in range(n_brute_forcers):
        users.append(_user("brute_forcer", random.uniform(120, 240), 0.9, 0.0, 0.0))

    # --- Exporters: sustained bulk exports ---
    for _ in range(n_exporters):
        users.append(_user("exporter", random.uniform(30, 90), 0.02, 0.6, 0.05))

    return users


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _meta(user: User) -> dict:
    return {
        "source": "producer",
        "tenant_id": user.tenant_id,
        "correlation_id": f"corr_{uuid.uuid4().hex[:12]}",
    }


def _make_audit_event(user: User) -> dict:
    """Generate a single audit event for a user based on their profile."""
    roll = random.random()

    if user.role == "brute_forcer" or roll < 0.1:
        action = "login"
        outcome = "failure" if random.random() < user.failure_rate else "success"
    elif roll < 0.1 + user.export_rate:
        action = random.choice(["export.csv", "export.pdf", "download"])
        outcome = "success"
    else:
        action = random.choice(NORMAL_ACTIONS)
        outcome = "success" if random.random() > 0.02 else "failure"

    return {
        "app_id": user.app_id,
        "user_id": user.user_id,
        "action": action,
        "resource": random.choice(["invoices", "customers", "admin/users", "reports"]),
        "outcome": outcome,
        "tags": [user.role],
        "data": {"ip": user.ip, "machine": user.machine},
        "meta": _meta(user),
    }


def _make_activity_pair(user: User, orphan_rate: float) -> list[dict]:
    """A request/response pair; with probability *orphan_rate* only the response."""
    job_id = f"job_{uuid.uuid4().hex[:12]}"
    meta = _meta(user)
    failed = random.random() < 0.05
    response = {
        "kind": "response",
        "job_id": job_id,
        "response": {"output_tokens": random.randint(50, 4000)},
        "cost": round(random.uniform(0.0001, 0.05), 5),
        "error": {"message": "upstream timeout"} if failed else None,
        "meta": meta,
    }
    if random.random() < orphan_rate:
        return [response]
    request = {
        "kind": "request",
        "job_id": job_id,
        "user_id": user.user_id,
        "model": random.choice(MODELS),
        "provider": random.choice(PROVIDERS),
        "request": {"input_tokens": random.randint(100, 8000)},
        "meta": meta,
    }
    return [request, response]


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Audit and activity event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--audit-topic", default="audit-events")
    parser.add_argument("--activity-topic", default="activity-events")
    parser.add_argument("--normal", type=int, default=8)
    parser.add_argument("--brute-forcers", type=int, default=1)
    parser.add_argument("--exporters", type=int, default=1)
    parser.add_argument("--orphan-rate", type=float, default=0.02,
                        help="Fraction of activity responses sent without a request")
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    users = _create_users(args.normal, args.brute_forcers, args.exporters)
    weights = [u.events_per_min for u in users]

    print(f"Generating to '{args.audit_topic}' and '{args.activity_topic}' "
          f"at ~{args.eps} events/sec")
    print(f"Users: {len(users)} total")
    for u in users:
        print(f"  {u.user_id}  {u.role:<13s} ~{u.events_per_min:>6.0f} epm  "
              f"app={u.app_id}  ip={u.ip}")

    _ensure_topics(args.bootstrap_servers, [args.audit_topic, args.activity_topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "audit-event-generator",
    })

    count = 0
    delay = 1.0 / args.eps

    while running:
        user = random.choices(users, weights=weights, k=1)[0]

        if random.random() < user.activity_rate:
            # Same key keeps request and response on one partition, in order.
            for message in _make_activity_pair(user, args.orphan_rate):
                producer.produce(
                    topic=args.activity_topic,
                    key=message["job_id"].encode(),
                    value=json.dumps(message),
                )
        else:
            event = _make_audit_event(user)
            producer.produce(
                topic=args.audit_topic,
                key=event["user_id"].encode(),
                value=json.dumps(event),
            )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} events produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
