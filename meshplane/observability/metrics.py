"""Prometheus metrics for meshplane."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# Reconcile pass metrics
reconcile_total = Counter(
    "meshplane_reconcile_total",
    "Total reconciliation passes by outcome",
    ["outcome"],
)

reconcile_duration_seconds = Histogram(
    "meshplane_reconcile_duration_seconds",
    "Duration of one reconciliation pass in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Per-object metrics
resource_operations_total = Counter(
    "meshplane_resource_operations_total",
    "Create/patch/delete calls issued against managed resources",
    ["operation", "result"],
)

# Readiness metrics
component_not_ready_total = Counter(
    "meshplane_component_not_ready_total",
    "Passes that stopped because a component was not yet ready",
    ["component"],
)
