"""Prometheus metrics for the enrichment engine.

Each Counter/Gauge/Histogram below registers itself in the global prometheus_client
REGISTRY on import.  The service entrypoint exposes them with
start_http_server(); library users can scrape the same registry from their
own HTTP server.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
units_total = Counter(
    "enricher_units_total",
    "Units of work accepted by the dispatcher",
    ["component"],
)
dropped_total = Counter(
    "enricher_dropped_total",
    "Units of work dropped because max_in_flight was reached",
    ["component"],
)
failures_total = Counter(
    "enricher_failures_total",
    "Store or handler failures caught inside a unit of work",
    ["component"],
)
in_flight = Gauge(
    "enricher_in_flight",
    "Units of work currently executing",
)

# ---------------------------------------------------------------------------
# Enrichment output
# ---------------------------------------------------------------------------
annotations_total = Counter(
    "enricher_annotations_total",
    "Risks and insights attached by event rules",
    ["type"],
)
aggregation_alerts_total = Counter(
    "enricher_aggregation_alerts_total",
    "Aggregation rule firings",
    ["rule_id"],
)
unbound_responses_total = Counter(
    "enricher_unbound_responses_total",
    "Activity responses with no matching request",
    ["policy"],
)

# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
activity_duration = Histogram(
    "enricher_activity_duration_milliseconds",
    "Request-to-response duration of correlated activities",
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000],
)
