#!/usr/bin/env python3
# src/constants.py
"""
Shared names and environment-driven settings for the plumber operator.
"""

import os
import socket

# -----------------------------
# Operator identity
# -----------------------------
OPERATOR_NAMESPACE = os.environ.get("OPERATOR_NAMESPACE", "plumber-system")
POD_NAME = os.environ.get("POD_NAME", socket.gethostname())
FIELD_MANAGER = os.environ.get("FIELD_MANAGER", "plumberctl")

# -----------------------------
# Custom resources
# -----------------------------
CRD_GROUP = "plumber.io"
CRD_VERSION = "v1"
REPLICATOR_KIND = "Replicator"
REPLICATOR_PLURAL = "replicators"
CLUSTER_DETECTOR_KIND = "ClusterDetector"
CLUSTER_DETECTOR_PLURAL = "clusterdetectors"
FINALIZER_NAME = f"{CRD_GROUP}/finalizer"
ROLE_LABEL = "app.kubernetes.io/role"

# -----------------------------
# Credential store
# -----------------------------
KUBECONFIG_SECRET_NAMESPACE = os.environ.get("KUBECONFIG_SECRET_NAMESPACE", "kubeconfig")
KUBECONFIG_SECRET_NAME = os.environ.get("KUBECONFIG_SECRET_NAME", "config")
KUBECONFIG_SECRET_KEY = os.environ.get("KUBECONFIG_SECRET_KEY", "config")

# The local cluster is registered as "<cluster>.<user>" like every other context
LOCAL_CLUSTER_NAME = os.environ.get("LOCAL_CLUSTER_NAME", "kubernetes")
LOCAL_AUTH_INFO = os.environ.get("LOCAL_AUTH_INFO", "kubernetes-admin")
PRIMARY_CONTEXT = "primary"

# -----------------------------
# Replicated workload
# -----------------------------
INGRESS_SECRET_NAME = "ca-secret"
CLIENT_SECRET_NAME = "cli-secret"
INGRESS_CLASS_NAME = "nginx"

# -----------------------------
# Timeouts
# -----------------------------
REQUEST_TIMEOUT = int(os.environ.get("REQUEST_TIMEOUT", "30"))
HEALTH_CHECK_TIMEOUT = int(os.environ.get("HEALTH_CHECK_TIMEOUT", "2"))


def cluster_identity(cluster: str, user: str) -> str:
    """Identity of a kubeconfig context: its cluster and user names joined by a dot."""
    return f"{cluster}.{user}"


LOCAL_IDENTITY = cluster_identity(LOCAL_CLUSTER_NAME, LOCAL_AUTH_INFO)
