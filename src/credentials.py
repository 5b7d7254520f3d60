#!/usr/bin/env python3
# src/credentials.py
"""
Credential fan-out for multi-cluster replication.

This module provides functionality for:
- Reading the merged kubeconfig stored in the shared credential secret
- Resolving each context to its "<cluster>.<user>" identity and API endpoint
- Building one ClusterClient per requested identity, materialized in memory
- Seeding the credential secret with the local (primary) cluster's own entry
"""

import base64
import copy
import logging
from typing import Any, Dict, Iterable, NamedTuple, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from constants import (
    KUBECONFIG_SECRET_KEY,
    KUBECONFIG_SECRET_NAME,
    KUBECONFIG_SECRET_NAMESPACE,
    LOCAL_AUTH_INFO,
    LOCAL_CLUSTER_NAME,
    LOCAL_IDENTITY,
    PRIMARY_CONTEXT,
    REQUEST_TIMEOUT,
    cluster_identity,
)
from kubeclient import ClusterClient

logger = logging.getLogger("plumber-operator.credentials")


class CredentialError(Exception):
    """The credential secret is missing or cannot be parsed."""


class ClientConstructionError(Exception):
    """A specific context could not produce a working client."""

    def __init__(self, context: str, cause: Exception):
        self.context = context
        self.cause = cause
        super().__init__(f"failed to create client for context {context}: {cause}")


class ContextEntry(NamedTuple):
    name: str
    cluster: str
    user: str
    server: str

    @property
    def identity(self) -> str:
        return cluster_identity(self.cluster, self.user)


class Kubeconfig(NamedTuple):
    raw: Dict[str, Any]
    contexts: Dict[str, ContextEntry]


def _named(items: Optional[list], section: str) -> Dict[str, Dict[str, Any]]:
    entries = {}
    for item in items or []:
        if not isinstance(item, dict) or "name" not in item:
            raise CredentialError(f"malformed {section} entry in kubeconfig")
        entries[item["name"]] = item.get(section[:-1]) or {}
    return entries


def parse_kubeconfig(data: bytes) -> Kubeconfig:
    """Parse a serialized kubeconfig into its context table."""
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise CredentialError(f"failed to parse kubeconfig: {e}")
    if not isinstance(raw, dict):
        raise CredentialError("kubeconfig is not a mapping")

    clusters = _named(raw.get("clusters"), "clusters")
    _named(raw.get("users"), "users")
    contexts = {}
    for name, ctx in _named(raw.get("contexts"), "contexts").items():
        cluster = ctx.get("cluster")
        user = ctx.get("user")
        if not cluster or not user:
            raise CredentialError(f"context {name} must reference a cluster and a user")
        server = clusters.get(cluster, {}).get("server", "")
        contexts[name] = ContextEntry(name=name, cluster=cluster, user=user, server=server)

    return Kubeconfig(raw=raw, contexts=contexts)


def read_kubeconfig(core_api: client.CoreV1Api) -> Kubeconfig:
    """Read and parse the shared credential secret."""
    try:
        secret = core_api.read_namespaced_secret(
            KUBECONFIG_SECRET_NAME, KUBECONFIG_SECRET_NAMESPACE
        )
    except ApiException as e:
        raise CredentialError(
            f"failed to get kubeconfig secret {KUBECONFIG_SECRET_NAMESPACE}/{KUBECONFIG_SECRET_NAME}: "
            f"{e.status} {e.reason}"
        )

    encoded = (secret.data or {}).get(KUBECONFIG_SECRET_KEY)
    if not encoded:
        raise CredentialError(
            f"kubeconfig secret has no {KUBECONFIG_SECRET_KEY!r} key"
        )
    try:
        data = base64.b64decode(encoded)
    except (ValueError, TypeError) as e:
        raise CredentialError(f"kubeconfig secret is not valid base64: {e}")
    return parse_kubeconfig(data)


class CredentialFanout:
    """Turns the credential secret into per-cluster clients."""

    def __init__(self, core_api: client.CoreV1Api, request_timeout: Optional[float] = REQUEST_TIMEOUT):
        self.core_api = core_api
        self.request_timeout = request_timeout

    def load(self) -> Kubeconfig:
        return read_kubeconfig(self.core_api)

    def clients_for(self, targets: Iterable[str]) -> Dict[str, ClusterClient]:
        """Build a client for every context whose identity is in ``targets``."""
        wanted = set(targets)
        kubeconfig = self.load()

        clients: Dict[str, ClusterClient] = {}
        for entry in kubeconfig.contexts.values():
            if entry.identity not in wanted:
                continue
            clients[entry.identity] = self._build(kubeconfig.raw, entry)

        missing = wanted - set(clients)
        if missing:
            logger.warning(
                f"No kubeconfig context found for target clusters: {', '.join(sorted(missing))}"
            )
        return clients

    def _build(self, raw: Dict[str, Any], entry: ContextEntry) -> ClusterClient:
        try:
            # Each client gets its own copy; nothing is written to a shared path
            api_client = config.new_client_from_config_dict(
                copy.deepcopy(raw), context=entry.name, persist_config=False
            )
        except Exception as e:
            raise ClientConstructionError(entry.name, e)
        return ClusterClient(entry.identity, api_client, request_timeout=self.request_timeout)


def primary_client(request_timeout: Optional[float] = REQUEST_TIMEOUT) -> ClusterClient:
    """Client for the cluster the operator runs in, from the loaded default configuration."""
    return ClusterClient(LOCAL_IDENTITY, client.ApiClient(), request_timeout=request_timeout)


def _read_file_b64(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode()


def build_primary_kubeconfig(configuration: client.Configuration) -> Dict[str, Any]:
    """Describe the local cluster as a single-context kubeconfig."""
    cluster: Dict[str, Any] = {"server": configuration.host}
    ca_data = _read_file_b64(configuration.ssl_ca_cert)
    if ca_data:
        cluster["certificate-authority-data"] = ca_data

    user: Dict[str, Any] = {}
    token = (configuration.api_key or {}).get("authorization") or (
        configuration.api_key or {}
    ).get("BearerToken")
    if token:
        user["token"] = token.split(" ", 1)[-1] if token.lower().startswith("bearer ") else token
    cert_data = _read_file_b64(configuration.cert_file)
    key_data = _read_file_b64(configuration.key_file)
    if cert_data and key_data:
        user["client-certificate-data"] = cert_data
        user["client-key-data"] = key_data

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": LOCAL_CLUSTER_NAME, "cluster": cluster}],
        "users": [{"name": LOCAL_AUTH_INFO, "user": user}],
        "contexts": [
            {
                "name": PRIMARY_CONTEXT,
                "context": {"cluster": LOCAL_CLUSTER_NAME, "user": LOCAL_AUTH_INFO},
            }
        ],
        "current-context": PRIMARY_CONTEXT,
    }


def ensure_primary_credentials(primary: ClusterClient, configuration: client.Configuration) -> bool:
    """Seed the credential secret with the primary cluster's entry.

    Returns True when the secret was written, False when it already held a
    kubeconfig (which the CLI tooling may have extended with more contexts).
    """
    existing = primary.get("Secret", KUBECONFIG_SECRET_NAME, KUBECONFIG_SECRET_NAMESPACE)
    if existing and (existing.get("data") or {}).get(KUBECONFIG_SECRET_KEY):
        logger.info("Kubeconfig secret already exists, keeping registered contexts")
        return False

    kubeconfig = yaml.safe_dump(build_primary_kubeconfig(configuration), default_flow_style=False)

    primary.apply(
        "Namespace",
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": KUBECONFIG_SECRET_NAMESPACE}},
    )
    primary.apply(
        "Secret",
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": KUBECONFIG_SECRET_NAME,
                "namespace": KUBECONFIG_SECRET_NAMESPACE,
            },
            "data": {KUBECONFIG_SECRET_KEY: base64.b64encode(kubeconfig.encode()).decode()},
        },
        namespace=KUBECONFIG_SECRET_NAMESPACE,
    )
    logger.info(
        f"Wrote primary kubeconfig to secret {KUBECONFIG_SECRET_NAMESPACE}/{KUBECONFIG_SECRET_NAME}"
    )
    return True
