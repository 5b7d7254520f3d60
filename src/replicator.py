#!/usr/bin/env python3
# src/replicator.py
"""
Replicator reconciliation: fan a declared workload out to member clusters.

A Replicator object declares a namespace plus a ConfigMap, a Deployment and an
optional Service and Ingress. Every pass:
- holds a finalizer on the Replicator while it is active
- makes sure the replication namespace exists on every cluster
- applies the primary cluster first, then each secondary independently
- publishes a freshly built per-resource status table

When the Replicator is being deleted, secondary-cluster copies are removed
explicitly (they cannot carry an owner reference), the finalizer is released
and the primary namespace is deleted, letting owner references cascade.

All per-pass data lives in ReplicationContext values passed down the call
chain, so several Replicators can be reconciled concurrently.
"""

import base64
import copy
import logging
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

import metrics
from constants import (
    CLIENT_SECRET_NAME,
    CRD_GROUP,
    CRD_VERSION,
    FIELD_MANAGER,
    FINALIZER_NAME,
    INGRESS_CLASS_NAME,
    INGRESS_SECRET_NAME,
    LOCAL_IDENTITY,
    REPLICATOR_KIND,
    REPLICATOR_PLURAL,
)
from credentials import CredentialFanout
from kubeclient import ClusterClient, is_conflict
from pki import CertificateIssuer
from resources import CONFIG_MAP, DEPLOYMENT, INGRESS, NAMESPACE, SECRET, SERVICE, ResourceKind

logger = logging.getLogger("plumber-operator.replicator")

APPLIED = "applied"
NOT_APPLIED = "not applied"
SYNCED = "synced"
NOT_SYNCED = "not synced"

ACTIVE = "Active"
FINALIZING = "Finalizing"

SELECTOR_LABEL = "apps"
ANNOTATE_REWRITE_TARGET = {"nginx.ingress.kubernetes.io/rewrite-target": "/"}
ANNOTATE_VERIFY_CLIENT = {"nginx.ingress.kubernetes.io/auth-tls-verify-client": "on"}
ANNOTATE_TLS_SECRET = "nginx.ingress.kubernetes.io/auth-tls-secret"

_UNFETCHED = object()


class ReplicationError(Exception):
    """A pass did not converge; ``errors`` holds the underlying failures."""

    def __init__(self, message: str, errors: Optional[List[Exception]] = None):
        self.errors = list(errors or [])
        if self.errors:
            message = f"{message}: " + "; ".join(str(e) for e in self.errors)
        super().__init__(message)


class ReplicationStatus:
    """Apply outcome per (cluster, kind, name) for a single pass."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str, str], str] = {}
        self.errors: List[Exception] = []
        self.synced = True

    def record(self, cluster: str, kind: str, name: str, applied: bool):
        self._entries[(cluster, kind, name)] = APPLIED if applied else NOT_APPLIED

    def fail(self, errors: List[Exception]):
        self.errors.extend(errors)
        self.synced = False

    def to_status(self) -> Dict[str, Any]:
        return {
            "applied": [
                {"cluster": cluster, "kind": kind, "name": name, "applyStatus": outcome}
                for (cluster, kind, name), outcome in self._entries.items()
            ],
            "synced": SYNCED if self.synced else NOT_SYNCED,
        }


class ReplicatorSpec(NamedTuple):
    """Read-only view of a Replicator object."""

    name: str
    uid: str
    replication_namespace: str
    config_map_name: str
    config_map_data: Dict[str, str]
    deployment_name: str
    deployment_spec: Dict[str, Any]
    service_name: Optional[str]
    service_spec: Optional[Dict[str, Any]]
    ingress_name: Optional[str]
    ingress_spec: Optional[Dict[str, Any]]
    ingress_secure: bool
    target_clusters: List[str]
    finalizers: List[str]
    deleting: bool

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ReplicatorSpec":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            replication_namespace=spec.get("replicationNamespace", ""),
            config_map_name=spec.get("configMapName", ""),
            config_map_data=spec.get("configMapData") or {},
            deployment_name=spec.get("deploymentName", ""),
            deployment_spec=spec.get("deploymentSpec") or {},
            service_name=spec.get("serviceName"),
            service_spec=spec.get("serviceSpec"),
            ingress_name=spec.get("ingressName"),
            ingress_spec=spec.get("ingressSpec"),
            ingress_secure=bool(spec.get("ingressSecureEnabled", False)),
            target_clusters=list(spec.get("targetCluster") or []),
            finalizers=list(metadata.get("finalizers") or []),
            deleting=bool(metadata.get("deletionTimestamp")),
        )

    @property
    def state(self) -> str:
        return FINALIZING if self.deleting else ACTIVE

    @property
    def ingress_host(self) -> Optional[str]:
        rules = (self.ingress_spec or {}).get("rules") or []
        if not rules:
            return None
        return rules[0].get("host")

    @property
    def selector_labels(self) -> Dict[str, str]:
        return {SELECTOR_LABEL: self.deployment_name}


class ReplicationContext(NamedTuple):
    """Everything one cluster's apply step needs, passed explicitly."""

    spec: ReplicatorSpec
    owner: Optional[Dict[str, Any]]
    cluster: str
    client: ClusterClient
    is_primary: bool
    status: ReplicationStatus

    @property
    def namespace(self) -> str:
        return self.spec.replication_namespace

    @property
    def owner_link(self) -> Optional[Dict[str, Any]]:
        return self.owner if self.is_primary else None


def owner_reference(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata") or {}
    return {
        "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
        "kind": REPLICATOR_KIND,
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "blockOwnerDeletion": True,
        "controller": True,
    }


def first_tls_host(ingress: Optional[Dict[str, Any]]) -> Optional[str]:
    tls = ((ingress or {}).get("spec") or {}).get("tls") or []
    if not tls:
        return None
    hosts = tls[0].get("hosts") or []
    return hosts[0] if hosts else None


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class Replicator:
    """Reconciles Replicator objects across the primary and secondary clusters."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        fanout: CredentialFanout,
        primary: ClusterClient,
        issuer: Optional[CertificateIssuer] = None,
        field_manager: str = FIELD_MANAGER,
    ):
        self.api = custom_objects_api
        self.fanout = fanout
        self.primary = primary
        self.issuer = issuer or CertificateIssuer()
        self.field_manager = field_manager

    # -----------------------------
    # Entry point
    # -----------------------------

    def reconcile(self, name: str) -> bool:
        """Run one pass for the named Replicator. Returns True to request a requeue."""
        obj = self._get(name)
        if obj is None:
            logger.debug(f"[Replicator: {name}] Not found, nothing to reconcile")
            return False

        spec = ReplicatorSpec.from_object(obj)

        if spec.state == FINALIZING:
            secondaries = self._secondary_clients(spec) if FINALIZER_NAME in spec.finalizers else {}
            self.finalize(obj, spec, secondaries)
            try:
                metrics.replicator_synced.remove(name)
            except KeyError:
                logger.debug(f"[Replicator: {name}] No synced sample to drop")
            return False

        if FINALIZER_NAME not in spec.finalizers:
            self._set_finalizers(obj, spec.finalizers + [FINALIZER_NAME])
            logger.info(f"[Replicator: {name}] Finalizer added")
            return True

        secondaries = self._secondary_clients(spec)
        self.ensure_namespace(self.primary, spec.replication_namespace)
        for secondary in secondaries.values():
            self.ensure_namespace(secondary, spec.replication_namespace)

        status = self.replicate(spec, owner_reference(obj), secondaries)
        self.publish_status(obj, status)
        metrics.replicator_synced.labels(replicator=name).set(1 if status.synced else 0)

        if not status.synced:
            raise ReplicationError(f"Could not sync {name} on all clusters", status.errors)
        return False

    def _get(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.api.get_cluster_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                plural=REPLICATOR_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"[Replicator: {name}] Unable to fetch: {e}")
            raise

    def _secondary_clients(self, spec: ReplicatorSpec) -> Dict[str, ClusterClient]:
        targets = [t for t in spec.target_clusters if t != LOCAL_IDENTITY]
        if len(targets) != len(spec.target_clusters):
            logger.warning(
                f"[Replicator: {spec.name}] Primary cluster listed as a target, it is always replicated"
            )
        if not targets:
            return {}
        return self.fanout.clients_for(targets)

    # -----------------------------
    # Finalization
    # -----------------------------

    def _set_finalizers(self, obj: Dict[str, Any], finalizers: List[str]):
        metadata = obj.get("metadata") or {}
        self.api.patch_cluster_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            plural=REPLICATOR_PLURAL,
            name=metadata.get("name"),
            body={
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": metadata.get("resourceVersion"),
                }
            },
        )

    def finalize(self, obj: Dict[str, Any], spec: ReplicatorSpec, secondaries: Dict[str, ClusterClient]):
        """Remove secondary copies, release the finalizer, then drop the primary namespace."""
        if FINALIZER_NAME in spec.finalizers:
            errors = self.delete_secondary_resources(spec, secondaries)
            if errors:
                logger.error(
                    f"[Replicator: {spec.name}] Unable to delete secondary cluster resources: "
                    + "; ".join(str(e) for e in errors)
                )

            self._set_finalizers(obj, [f for f in spec.finalizers if f != FINALIZER_NAME])
            logger.info(f"[Replicator: {spec.name}] Finalizer removed")

        self.delete_primary_namespace(spec)

    def delete_secondary_resources(
        self, spec: ReplicatorSpec, secondaries: Dict[str, ClusterClient]
    ) -> List[Exception]:
        """Best-effort delete on every secondary; returns every error encountered."""
        targets: List[Tuple[ResourceKind, Optional[str]]] = []
        if spec.ingress_secure:
            targets.append((SECRET, CLIENT_SECRET_NAME))
            targets.append((SECRET, INGRESS_SECRET_NAME))
        if spec.ingress_spec is not None:
            targets.append((INGRESS, spec.ingress_name))
        if spec.service_spec is not None:
            targets.append((SERVICE, spec.service_name))
        targets.append((DEPLOYMENT, spec.deployment_name))
        targets.append((CONFIG_MAP, spec.config_map_name))

        errors: List[Exception] = []
        for cluster, secondary in sorted(secondaries.items()):
            for kind, name in targets:
                if not name:
                    continue
                try:
                    if secondary.delete(kind.kind, name, spec.replication_namespace):
                        logger.info(f"{kind.kind} deleted: [cluster] {cluster}, [resource] {name}")
                except Exception as e:
                    logger.error(f"Unable to delete {kind.kind} {name} for secondary cluster {cluster}: {e}")
                    errors.append(e)
            try:
                if secondary.delete(NAMESPACE.kind, spec.replication_namespace):
                    logger.info(
                        f"Namespace deleted: [cluster] {cluster}, [resource] {spec.replication_namespace}"
                    )
            except Exception as e:
                logger.error(f"Unable to delete namespace for secondary cluster {cluster}: {e}")
                errors.append(e)
        return errors

    def delete_primary_namespace(self, spec: ReplicatorSpec):
        try:
            if self.primary.delete(NAMESPACE.kind, spec.replication_namespace):
                logger.info(
                    f"Namespace deleted: [cluster] {self.primary.name}, [resource] {spec.replication_namespace}"
                )
        except Exception as e:
            logger.error(f"Unable to delete primary namespace {spec.replication_namespace}: {e}")

    # -----------------------------
    # Namespaces
    # -----------------------------

    def ensure_namespace(self, cluster: ClusterClient, namespace: str):
        """Create the replication namespace when missing. Failures are only logged."""
        try:
            if cluster.get(NAMESPACE.kind, namespace) is not None:
                return
            cluster.create(NAMESPACE.kind, NAMESPACE.manifest(namespace))
            logger.info(f"Namespace creation: [cluster] {cluster.name}, [resource] {namespace}")
        except Exception as e:
            if is_conflict(e):
                return
            logger.error(f"Could not create namespace {namespace} on cluster {cluster.name}: {e}")

    # -----------------------------
    # Fan-out
    # -----------------------------

    def replicate(
        self,
        spec: ReplicatorSpec,
        owner: Dict[str, Any],
        secondaries: Dict[str, ClusterClient],
    ) -> ReplicationStatus:
        """Apply to the primary, then to every secondary. Returns this pass's status."""
        status = ReplicationStatus()

        primary_ctx = ReplicationContext(
            spec=spec,
            owner=owner,
            cluster=self.primary.name,
            client=self.primary,
            is_primary=True,
            status=status,
        )
        errors = self.apply_resources(primary_ctx)
        if errors:
            logger.error(f"[Replicator: {spec.name}] Primary cluster apply failed, skipping secondaries")
            status.fail(errors)
            return status

        failed = []
        for cluster, secondary in sorted(secondaries.items()):
            ctx = primary_ctx._replace(cluster=cluster, client=secondary, is_primary=False)
            errors = self.apply_resources(ctx)
            if errors:
                logger.error(f"Could not replicate to secondary cluster {cluster}")
                failed.extend(errors)
        if failed:
            status.fail(failed)
        return status

    def apply_resources(self, ctx: ReplicationContext) -> List[Exception]:
        """Apply every declared resource on one cluster; one failure does not stop the rest."""
        steps = [self.apply_config_map, self.apply_deployment]
        if ctx.spec.service_spec is not None:
            steps.append(self.apply_service)
        if ctx.spec.ingress_spec is not None:
            steps.append(self.apply_ingress)

        errors = []
        for step in steps:
            error = step(ctx)
            if error is not None:
                errors.append(error)
        return errors

    def _apply(
        self,
        ctx: ReplicationContext,
        kind: ResourceKind,
        desired: Dict[str, Any],
        observed: Any = _UNFETCHED,
    ) -> Optional[Exception]:
        name = desired["metadata"]["name"]
        try:
            if observed is _UNFETCHED:
                observed = ctx.client.get(kind.kind, name, ctx.namespace)
            if not kind.differs(desired, observed, self.field_manager):
                ctx.status.record(ctx.cluster, kind.kind, name, True)
                return None
            ctx.client.apply(kind.kind, desired, ctx.namespace)
        except Exception as e:
            ctx.status.record(ctx.cluster, kind.kind, name, False)
            metrics.resource_apply_total.labels(cluster=ctx.cluster, kind=kind.kind, result="error").inc()
            logger.error(f"Unable to apply {kind.kind}: [cluster] {ctx.cluster}, [resource] {name}: {e}")
            return e

        ctx.status.record(ctx.cluster, kind.kind, name, True)
        metrics.resource_apply_total.labels(cluster=ctx.cluster, kind=kind.kind, result="applied").inc()
        logger.info(f"{kind.kind} Applied: [cluster] {ctx.cluster}, [resource] {name}")
        return None

    def _fail(self, ctx: ReplicationContext, kind: ResourceKind, name: str, error: Exception) -> Exception:
        ctx.status.record(ctx.cluster, kind.kind, name, False)
        logger.error(f"Unable to apply {kind.kind}: [cluster] {ctx.cluster}, [resource] {name}: {error}")
        return error

    def apply_config_map(self, ctx: ReplicationContext) -> Optional[Exception]:
        desired = CONFIG_MAP.manifest(
            ctx.spec.config_map_name,
            ctx.namespace,
            {"data": ctx.spec.config_map_data},
            owner=ctx.owner_link,
        )
        return self._apply(ctx, CONFIG_MAP, desired)

    def apply_deployment(self, ctx: ReplicationContext) -> Optional[Exception]:
        declared = ctx.spec.deployment_spec
        labels = ctx.spec.selector_labels

        spec: Dict[str, Any] = {"selector": {"matchLabels": dict(labels)}}
        if declared.get("replicas") is not None:
            spec["replicas"] = declared["replicas"]
        strategy = declared.get("strategy")
        if strategy:
            spec["strategy"] = {
                "type": strategy.get("type"),
                "rollingUpdate": copy.deepcopy(strategy.get("rollingUpdate")),
            }

        template = copy.deepcopy(declared.get("template") or {})
        template_meta = template.setdefault("metadata", {})
        template_meta["labels"] = {**(template_meta.get("labels") or {}), **labels}
        spec["template"] = template

        desired = DEPLOYMENT.manifest(
            ctx.spec.deployment_name, ctx.namespace, {"spec": spec}, owner=ctx.owner_link
        )
        return self._apply(ctx, DEPLOYMENT, desired)

    def apply_service(self, ctx: ReplicationContext) -> Optional[Exception]:
        spec = copy.deepcopy(ctx.spec.service_spec)
        spec["selector"] = ctx.spec.selector_labels
        desired = SERVICE.manifest(
            ctx.spec.service_name, ctx.namespace, {"spec": spec}, owner=ctx.owner_link
        )
        return self._apply(ctx, SERVICE, desired)

    def apply_ingress(self, ctx: ReplicationContext) -> Optional[Exception]:
        name = ctx.spec.ingress_name
        annotations = dict(ANNOTATE_REWRITE_TARGET)
        spec = copy.deepcopy(ctx.spec.ingress_spec)
        spec["ingressClassName"] = INGRESS_CLASS_NAME

        try:
            observed = ctx.client.get(INGRESS.kind, name, ctx.namespace)
        except Exception as e:
            return self._fail(ctx, INGRESS, name, e)

        if ctx.spec.ingress_secure:
            host = ctx.spec.ingress_host
            if not host:
                return self._fail(
                    ctx, INGRESS, name, ValueError("secured ingress requires spec.rules[0].host")
                )
            try:
                rotated = self.rotate_secrets_on_host_change(ctx, observed, host)
                self.ensure_tls_secrets(ctx, host, regenerate=rotated)
            except Exception as e:
                return self._fail(ctx, INGRESS, name, e)

            annotations.update(ANNOTATE_VERIFY_CLIENT)
            annotations[ANNOTATE_TLS_SECRET] = f"{ctx.namespace}/{INGRESS_SECRET_NAME}"
            spec["tls"] = [{"hosts": [host], "secretName": INGRESS_SECRET_NAME}] + (spec.get("tls") or [])

        desired = INGRESS.manifest(
            name, ctx.namespace, {"spec": spec}, owner=ctx.owner_link, annotations=annotations
        )
        return self._apply(ctx, INGRESS, desired, observed)

    # -----------------------------
    # TLS material
    # -----------------------------

    def rotate_secrets_on_host_change(
        self, ctx: ReplicationContext, observed_ingress: Optional[Dict[str, Any]], host: str
    ) -> bool:
        """Delete every Secret in the namespace when the TLS host changed.

        This removes all Secrets in the namespace, not only the ones this
        operator generated. Returns True when a rotation happened.
        """
        current = first_tls_host(observed_ingress)
        if current is None or current == host:
            return False

        logger.info(
            f"[cluster: {ctx.cluster}] Ingress TLS host changed {current} -> {host}, recreating secrets"
        )
        for secret in ctx.client.list(SECRET.kind, ctx.namespace):
            secret_name = (secret.get("metadata") or {}).get("name")
            ctx.client.delete(SECRET.kind, secret_name, ctx.namespace)
            logger.info(f"delete Secret resource: [cluster] {ctx.cluster}, [resource] {secret_name}")
        return True

    def ensure_tls_secrets(self, ctx: ReplicationContext, host: str, regenerate: bool = False):
        """Create the server and client secrets when they do not exist yet."""
        need_server = regenerate or ctx.client.get(SECRET.kind, INGRESS_SECRET_NAME, ctx.namespace) is None
        need_client = regenerate or ctx.client.get(SECRET.kind, CLIENT_SECRET_NAME, ctx.namespace) is None

        bundle = None
        if need_server:
            bundle = self.issuer.issue_bundle(host)
            self._apply_secret(
                ctx,
                INGRESS_SECRET_NAME,
                {
                    "tls.crt": _b64(bundle.server_cert),
                    "tls.key": _b64(bundle.server_key),
                    "ca.crt": _b64(bundle.ca_cert),
                },
            )
        else:
            ctx.status.record(ctx.cluster, SECRET.kind, INGRESS_SECRET_NAME, True)

        if need_client:
            if bundle is not None:
                cert, key = bundle.client_cert, bundle.client_key
            else:
                cert, key = self.issuer.issue_client()
            self._apply_secret(ctx, CLIENT_SECRET_NAME, {"client.crt": _b64(cert), "client.key": _b64(key)})
        else:
            ctx.status.record(ctx.cluster, SECRET.kind, CLIENT_SECRET_NAME, True)

    def _apply_secret(self, ctx: ReplicationContext, name: str, data: Dict[str, str]):
        desired = SECRET.manifest(name, ctx.namespace, {"data": data}, owner=ctx.owner_link)
        try:
            ctx.client.apply(SECRET.kind, desired, ctx.namespace)
        except Exception:
            ctx.status.record(ctx.cluster, SECRET.kind, name, False)
            raise
        ctx.status.record(ctx.cluster, SECRET.kind, name, True)
        logger.info(f"Certificates Secret Applied: [cluster] {ctx.cluster}, [resource] {name}")

    # -----------------------------
    # Status
    # -----------------------------

    def publish_status(self, obj: Dict[str, Any], status: ReplicationStatus):
        """Write this pass's status, skipping the write when nothing changed."""
        body = status.to_status()
        current = obj.get("status") or {}
        if current.get("applied") == body["applied"] and current.get("synced") == body["synced"]:
            return

        name = (obj.get("metadata") or {}).get("name")
        self.api.patch_cluster_custom_object_status(
            group=CRD_GROUP,
            version=CRD_VERSION,
            plural=REPLICATOR_PLURAL,
            name=name,
            body={"status": body},
        )
        logger.info(f"[Replicator: {name}] Status updated: {body['synced']}")
