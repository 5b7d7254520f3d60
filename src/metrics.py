#!/usr/bin/env python3
# src/metrics.py
"""Prometheus metrics shared by the controllers."""

from prometheus_client import Counter, Gauge, Info

reconcile_total = Counter(
    "plumber_reconcile_total",
    "Total number of reconciliation passes",
    ["controller", "result"],
)
cluster_health = Gauge(
    "plumber_cluster_health",
    "Whether the cluster's livez endpoint answered on the last pass (1 RUNNING, 0 UNKNOWN)",
    ["cluster", "role"],
)
resource_apply_total = Counter(
    "plumber_resource_apply_total",
    "Total number of server-side apply calls issued to member clusters",
    ["cluster", "kind", "result"],
)
replicator_synced = Gauge(
    "plumber_replicator_synced",
    "Whether the last pass of a Replicator converged on every cluster",
    ["replicator"],
)
info_metric = Info("plumber_operator_info", "Information about the plumber operator instance")
leader_status = Gauge(
    "plumber_leader_status",
    "Whether this pod holds the operator lease",
    ["pod"],
)
leadership_changes_total = Counter(
    "plumber_leadership_changes_total", "Total number of leadership transitions"
)
