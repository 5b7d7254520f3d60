#!/usr/bin/env python3
# src/kubeclient.py
"""
Per-cluster API handle used by the replication engine.

A ClusterClient wraps one kubernetes ApiClient (scoped to a single kubeconfig
context) and exposes the handful of verbs the operator needs for the kinds it
replicates: get, list, create, apply (server-side, forced) and delete.
Objects come back as plain dicts in API (camelCase) form.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from constants import FIELD_MANAGER, REQUEST_TIMEOUT

logger = logging.getLogger("plumber-operator.kubeclient")

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"

# kind -> (api attribute, method suffix, namespaced)
KIND_OPERATIONS = {
    "ConfigMap": ("core", "config_map", True),
    "Deployment": ("apps", "deployment", True),
    "Service": ("core", "service", True),
    "Ingress": ("networking", "ingress", True),
    "Secret": ("core", "secret", True),
    "Namespace": ("core", "namespace", False),
}


def is_conflict(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 409


class ClusterClient:
    """Typed API access to a single cluster."""

    def __init__(
        self,
        name: str,
        api_client: client.ApiClient,
        field_manager: str = FIELD_MANAGER,
        request_timeout: Optional[float] = REQUEST_TIMEOUT,
    ):
        self.name = name
        self.api_client = api_client
        self.field_manager = field_manager
        self.request_timeout = request_timeout
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.networking = client.NetworkingV1Api(api_client)

    def __repr__(self):
        return f"ClusterClient({self.name!r})"

    def _method(self, verb: str, kind: str):
        try:
            api_attr, suffix, namespaced = KIND_OPERATIONS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}")
        scope = "namespaced_" if namespaced else ""
        return getattr(getattr(self, api_attr), f"{verb}_{scope}{suffix}"), namespaced

    def _scoped(self, namespaced: bool, namespace: Optional[str]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if namespaced:
            if not namespace:
                raise ValueError("namespace is required for namespaced kinds")
            kwargs["namespace"] = namespace
        if self.request_timeout:
            kwargs["_request_timeout"] = self.request_timeout
        return kwargs

    def to_dict(self, obj) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the object, or None when it does not exist."""
        method, namespaced = self._method("read", kind)
        try:
            obj = method(name, **self._scoped(namespaced, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self.to_dict(obj)

    def list(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        method, namespaced = self._method("list", kind)
        result = method(**self._scoped(namespaced, namespace))
        return [self.to_dict(item) for item in result.items or []]

    def create(self, kind: str, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        method, namespaced = self._method("create", kind)
        return self.to_dict(method(body=body, **self._scoped(namespaced, namespace)))

    def apply(self, kind: str, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        """Forced server-side apply of ``body`` under this client's field manager."""
        method, namespaced = self._method("patch", kind)
        applied = method(
            name=body["metadata"]["name"],
            body=body,
            field_manager=self.field_manager,
            force=True,
            _content_type=APPLY_PATCH_CONTENT_TYPE,
            **self._scoped(namespaced, namespace),
        )
        return self.to_dict(applied)

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """Delete the object. Returns False when it was already gone."""
        method, namespaced = self._method("delete", kind)
        try:
            method(name, **self._scoped(namespaced, namespace))
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"[cluster: {self.name}] {kind} {name} already absent")
                return False
            raise
        return True
