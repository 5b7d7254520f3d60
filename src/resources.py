#!/usr/bin/env python3
# src/resources.py
"""
Resource variants replicated by the operator.

Each kind (ConfigMap, Deployment, Service, Ingress, Secret, Namespace) knows how
to build its apply manifest, how to normalize it, and how to compare a desired
manifest with what a cluster currently holds. The comparison only looks at the
fields owned by the operator's field manager, read back from managedFields, so
server-side defaults never register as a difference.
"""

import copy
import json
import logging
from typing import Any, Dict, List, Optional

from kubernetes.utils import parse_quantity

logger = logging.getLogger("plumber-operator.resources")

_EMPTY = (None, {}, [])


def compact(value: Any) -> Any:
    """Drop keys and list items that are None or empty containers, recursively."""
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            item = compact(item)
            if item not in _EMPTY:
                result[key] = item
        return result
    if isinstance(value, list):
        return [item for item in (compact(v) for v in value) if item is not None]
    return value


def _has_children(fields: Dict[str, Any]) -> bool:
    return any(key != "." for key in fields)


def _matches(item: Any, key_fields: Dict[str, Any]) -> bool:
    return isinstance(item, dict) and all(item.get(k) == v for k, v in key_fields.items())


def _extract(value: Any, fields: Dict[str, Any]) -> Any:
    if not _has_children(fields):
        return copy.deepcopy(value)

    if isinstance(value, dict):
        result = {}
        for key, sub in fields.items():
            if not key.startswith("f:"):
                continue
            name = key[2:]
            if name in value:
                result[name] = _extract(value[name], sub)
        return result

    if isinstance(value, list):
        keyed = []
        values = []
        for key, sub in fields.items():
            if key.startswith("k:"):
                keyed.append((json.loads(key[2:]), sub))
            elif key.startswith("v:"):
                values.append(json.loads(key[2:]))
        result = []
        for item in value:
            for key_fields, sub in keyed:
                if _matches(item, key_fields):
                    result.append(_extract(item, sub))
                    break
            else:
                if item in values:
                    result.append(copy.deepcopy(item))
        return result

    return copy.deepcopy(value)


def canonical_quantity(value: Any) -> Any:
    """Numeric value of a resource quantity, so "500m" equals 0.5 and "1Gi" equals 1073741824.

    Values that are not quantities are returned unchanged.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        return parse_quantity(value)
    except (ValueError, TypeError):
        return value


def _canonical_quantities(quantities: Any) -> Any:
    if not isinstance(quantities, dict):
        return quantities
    return {name: canonical_quantity(value) for name, value in quantities.items()}


def managed_fields_for(observed: Dict[str, Any], field_manager: str) -> Optional[Dict[str, Any]]:
    for entry in (observed.get("metadata") or {}).get("managedFields") or []:
        if entry.get("manager") == field_manager and entry.get("operation") == "Apply":
            return entry.get("fieldsV1") or {}
    return None


class ResourceKind:
    """Base variant: plain manifest, generic managed-field diff."""

    kind = ""
    api_version = ""
    namespaced = True

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.kind}>"

    def manifest(
        self,
        name: str,
        namespace: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        owner: Optional[Dict[str, Any]] = None,
        annotations: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": name}
        if self.namespaced:
            metadata["namespace"] = namespace
        if labels:
            metadata["labels"] = dict(labels)
        if annotations:
            metadata["annotations"] = dict(annotations)
        if owner:
            metadata["ownerReferences"] = [dict(owner)]

        result: Dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
        }
        for key, value in copy.deepcopy(body or {}).items():
            result[key] = value
        return self.normalize(result)

    def normalize(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        return compact(manifest)

    def extract(self, observed: Optional[Dict[str, Any]], field_manager: str) -> Optional[Dict[str, Any]]:
        """The applyable subset of ``observed`` owned by ``field_manager``."""
        if not observed:
            return None
        fields = managed_fields_for(observed, field_manager)
        if fields is None:
            return None

        extracted = _extract(observed, fields)
        metadata = extracted.setdefault("metadata", {})
        observed_meta = observed.get("metadata") or {}
        metadata["name"] = observed_meta.get("name")
        if self.namespaced:
            metadata["namespace"] = observed_meta.get("namespace")
        extracted["apiVersion"] = self.api_version
        extracted["kind"] = self.kind
        return self.normalize(extracted)

    def differs(
        self,
        desired: Dict[str, Any],
        observed: Optional[Dict[str, Any]],
        field_manager: str,
    ) -> bool:
        current = self.extract(observed, field_manager)
        if current is None:
            return True
        return self.comparable(self.normalize(desired)) != self.comparable(current)

    def comparable(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Form of a normalized manifest used for equality checks."""
        return manifest


class ConfigMapKind(ResourceKind):
    kind = "ConfigMap"
    api_version = "v1"


class DeploymentKind(ResourceKind):
    kind = "Deployment"
    api_version = "apps/v1"

    def normalize(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        manifest = copy.deepcopy(manifest)
        volumes: List[Dict[str, Any]] = (
            ((((manifest.get("spec") or {}).get("template") or {}).get("spec")) or {}).get("volumes")
            or []
        )
        for volume in volumes:
            empty_dir = volume.get("emptyDir")
            # The API server fills an unset emptyDir back in, so an empty one means "unset"
            if isinstance(empty_dir, dict) and not empty_dir.get("medium") and not empty_dir.get("sizeLimit"):
                volume["emptyDir"] = None
        return compact(manifest)

    def comparable(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        # The API server stores quantities in canonical form (0.5 -> "500m")
        manifest = copy.deepcopy(manifest)
        pod_spec = (((manifest.get("spec") or {}).get("template") or {}).get("spec")) or {}
        for field in ("containers", "initContainers"):
            for container in pod_spec.get(field) or []:
                resources = container.get("resources")
                if not isinstance(resources, dict):
                    continue
                for section in ("requests", "limits"):
                    if section in resources:
                        resources[section] = _canonical_quantities(resources[section])
        for volume in pod_spec.get("volumes") or []:
            empty_dir = volume.get("emptyDir")
            if isinstance(empty_dir, dict) and "sizeLimit" in empty_dir:
                empty_dir["sizeLimit"] = canonical_quantity(empty_dir["sizeLimit"])
        return manifest


class ServiceKind(ResourceKind):
    kind = "Service"
    api_version = "v1"


class IngressKind(ResourceKind):
    kind = "Ingress"
    api_version = "networking.k8s.io/v1"

    def normalize(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        manifest = compact(manifest)
        tls = (manifest.get("spec") or {}).get("tls")
        if tls and len(tls) > 1:
            # Several targets sharing one spec can stack identical TLS entries
            manifest["spec"]["tls"] = tls[:1]
        return manifest


class SecretKind(ResourceKind):
    kind = "Secret"
    api_version = "v1"


class NamespaceKind(ResourceKind):
    kind = "Namespace"
    api_version = "v1"
    namespaced = False


CONFIG_MAP = ConfigMapKind()
DEPLOYMENT = DeploymentKind()
SERVICE = ServiceKind()
INGRESS = IngressKind()
SECRET = SecretKind()
NAMESPACE = NamespaceKind()
