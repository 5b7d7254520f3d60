#!/usr/bin/env python3
# src/cluster_detector.py
"""
ClusterDetector catalog management.

This module provides functionality for:
- Pruning ClusterDetector objects whose kubeconfig context was removed
- Creating or updating one ClusterDetector per registered context
- Probing each cluster's livez endpoint and recording RUNNING/UNKNOWN
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

import requests
import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

import metrics
from constants import (
    CLUSTER_DETECTOR_KIND,
    CLUSTER_DETECTOR_PLURAL,
    CRD_GROUP,
    CRD_VERSION,
    HEALTH_CHECK_TIMEOUT,
    LOCAL_IDENTITY,
    OPERATOR_NAMESPACE,
    ROLE_LABEL,
)
from credentials import ContextEntry, CredentialFanout, Kubeconfig

logger = logging.getLogger("plumber-operator.cluster")

# livez is probed without certificate verification
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

RUNNING = "RUNNING"
UNKNOWN = "UNKNOWN"

ROLE_PRIMARY = "primary"
ROLE_SECONDARY = "secondary"

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"

_OBJECT_ADDRESS = re.compile(r"<([\w.]+) object at 0x[0-9a-fA-F]+>")


def role_for(identity: str) -> str:
    return ROLE_PRIMARY if identity == LOCAL_IDENTITY else ROLE_SECONDARY


def describe_error(error: Exception) -> str:
    """Error text that stays the same across attempts: object addresses are stripped."""
    message = _OBJECT_ADDRESS.sub(r"\1", str(error))
    return f"{type(error).__name__}: {message}"


def check_health(server: str, timeout: float = HEALTH_CHECK_TIMEOUT) -> Tuple[str, Optional[str]]:
    """Probe ``<server>/livez``.

    Any HTTP response means the API server is reachable and counts as RUNNING.
    Only transport failures (refused, timeout, TLS, DNS) produce UNKNOWN,
    with the error text as the reason.
    """
    try:
        requests.get(f"{server}/livez", verify=False, timeout=timeout)
    except requests.RequestException as e:
        return UNKNOWN, describe_error(e)
    return RUNNING, None


class ClusterDetector:
    """Keeps the ClusterDetector catalog in line with the credential secret."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        fanout: CredentialFanout,
        namespace: str = OPERATOR_NAMESPACE,
        health_timeout: float = HEALTH_CHECK_TIMEOUT,
    ):
        self.api = custom_objects_api
        self.fanout = fanout
        self._namespace = namespace
        self.health_timeout = health_timeout

    def reconcile(self, key: str = "") -> bool:
        """Run one catalog pass. Raises on catalog read/write errors."""
        kubeconfig = self.fanout.load()
        self.prune(kubeconfig)
        for entry in kubeconfig.contexts.values():
            self.upsert(entry)
            self.update_health(entry)
        return False

    # -----------------------------
    # Catalog
    # -----------------------------

    def _list(self) -> Dict[str, Any]:
        return self.api.list_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=self._namespace,
            plural=CLUSTER_DETECTOR_PLURAL,
        )

    def _get(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=self._namespace,
                plural=CLUSTER_DETECTOR_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def prune(self, kubeconfig: Kubeconfig) -> int:
        """Delete every ClusterDetector whose context is gone. Returns the number deleted."""
        deleted = 0
        for item in self._list().get("items", []):
            context = (item.get("spec") or {}).get("context")
            if context in kubeconfig.contexts:
                continue

            name = item["metadata"]["name"]
            try:
                self.api.delete_namespaced_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=self._namespace,
                    plural=CLUSTER_DETECTOR_PLURAL,
                    name=name,
                )
            except ApiException as e:
                if e.status != 404:
                    raise
            role = ((item.get("metadata") or {}).get("labels") or {}).get(ROLE_LABEL, "")
            try:
                metrics.cluster_health.remove(name, role)
            except KeyError:
                logger.debug(f"[ClusterDetector: {name}] No health sample to drop")
            logger.info(f"[ClusterDetector: {name}] Deleted")
            deleted += 1
        return deleted

    def desired(self, entry: ContextEntry) -> Dict[str, Any]:
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CLUSTER_DETECTOR_KIND,
            "metadata": {
                "name": entry.identity,
                "namespace": self._namespace,
                "labels": {ROLE_LABEL: role_for(entry.identity)},
            },
            "spec": {"context": entry.name, "cluster": entry.cluster, "user": entry.user},
        }

    def upsert(self, entry: ContextEntry) -> str:
        """Create or update the entry for ``entry``. Returns created, updated or unchanged."""
        body = self.desired(entry)
        name = entry.identity
        current = self._get(name)

        if current is None:
            try:
                self.api.create_namespaced_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=self._namespace,
                    plural=CLUSTER_DETECTOR_PLURAL,
                    body=body,
                )
            except ApiException as e:
                if e.status != 409:
                    raise
                # Someone else created it in between; converge it on the next pass
                return UNCHANGED
            logger.info(f"[ClusterDetector: {name}] {CREATED}")
            return CREATED

        labels = (current.get("metadata") or {}).get("labels") or {}
        if labels.get(ROLE_LABEL) == body["metadata"]["labels"][ROLE_LABEL] and current.get("spec") == body["spec"]:
            return UNCHANGED

        self.api.patch_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=self._namespace,
            plural=CLUSTER_DETECTOR_PLURAL,
            name=name,
            body={"metadata": {"labels": body["metadata"]["labels"]}, "spec": body["spec"]},
        )
        logger.info(f"[ClusterDetector: {name}] {UPDATED}")
        return UPDATED

    # -----------------------------
    # Health
    # -----------------------------

    def update_health(self, entry: ContextEntry) -> str:
        """Probe the cluster and record the result in the status subresource."""
        name = entry.identity
        current = self._get(name) or {}
        current_status = current.get("status") or {}
        previous = current_status.get("clusterStatus")

        state, reason = check_health(entry.server, self.health_timeout)
        metrics.cluster_health.labels(cluster=name, role=role_for(name)).set(1 if state == RUNNING else 0)

        if state == UNKNOWN and previous != UNKNOWN:
            logger.warning(f"[Cluster: {entry.cluster}] Health Check failed: {reason}")

        status = {"clusterStatus": state, "reason": reason}
        if current_status.get("clusterStatus") == state and current_status.get("reason") == reason:
            return state

        self.api.patch_namespaced_custom_object_status(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=self._namespace,
            plural=CLUSTER_DETECTOR_PLURAL,
            name=name,
            body={"status": status},
        )
        # A flip to UNKNOWN was already reported by the warning above
        if previous != state and state == RUNNING:
            logger.info(f"[ClusterDetector: {name}] Status update completed: {previous} -> {state}")
        return state
