"""Prometheus metrics for the resource graph runtime.

All metrics live in the default registry and are updated from the runtime
core; :func:`start_metrics_server` exposes them over HTTP when enabled.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, start_http_server

resources_created_total = Counter(
    "resgraph_resources_created_total",
    "Resource instances constructed and registered, by type.",
    ["type"],
)

resources_deduplicated_total = Counter(
    "resgraph_resources_deduplicated_total",
    "create_resource calls answered with an existing canonical instance.",
    ["type"],
)

resources_registered = Gauge(
    "resgraph_resources_registered",
    "Resource instances currently held by the runtime registry.",
)

field_computations_total = Counter(
    "resgraph_field_computations_total",
    "Field compute function invocations, by resource type and outcome.",
    ["type", "outcome"],
)

field_cache_hits_total = Counter(
    "resgraph_field_cache_hits_total",
    "Field reads served from a valid cache entry.",
    ["type"],
)

watch_events_total = Counter(
    "resgraph_watch_events_total",
    "Change notifications received by the watch bridge, by outcome.",
    ["outcome"],
)

watches_active = Gauge(
    "resgraph_watches_active",
    "Watched fields with an active external subscription.",
)


def start_metrics_server(port: int) -> None:
    """Serve the default registry on ``port`` from a background thread."""
    start_http_server(port)
