#!/usr/bin/env python3
# src/plumber.py
"""
Plumber - Kubernetes operator replicating a workload across clusters

Keeps a ClusterDetector catalog of every cluster registered in the shared
kubeconfig secret and replicates each Replicator's ConfigMap, Deployment,
Service and Ingress from the primary cluster onto its target clusters.
"""

import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import List
from urllib.parse import urlparse

from kubernetes import client, config
from prometheus_client import generate_latest

import metrics
from cluster_detector import ClusterDetector
from constants import FIELD_MANAGER, OPERATOR_NAMESPACE, POD_NAME, REQUEST_TIMEOUT
from controllers import Controller, cluster_detector_controller, replicator_controller
from credentials import CredentialError, CredentialFanout, ensure_primary_credentials, primary_client
from leader import LeaderElector
from pki import CertificateIssuer
from replicator import Replicator

# -----------------------------
# Environment variables
# -----------------------------
RESYNC_PERIOD = int(os.environ.get("RESYNC_PERIOD", 30))  # seconds
WORKER_COUNT = int(os.environ.get("WORKER_COUNT", 2))
LEADER_ELECT = os.environ.get("LEADER_ELECT", "false").lower() in (
    "true",
    "1",
    "yes",
)
LEASE_NAME = os.environ.get("LEASE_NAME", "plumber-operator-leader")
LEASE_DURATION = int(os.environ.get("LEASE_DURATION", 15))  # seconds
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8080))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

VERSION = "0.1.0"

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("plumber-operator")

# -----------------------------
# Global State
# -----------------------------
shutdown_event = threading.Event()
ready_event = threading.Event()


# -----------------------------
# Kubernetes Client Setup
# -----------------------------


def load_kube_configuration() -> client.Configuration:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")
    return client.Configuration.get_default_copy()


def initial_detection(detector: ClusterDetector) -> bool:
    """Populate the catalog once before the controllers start.

    A missing credential secret is tolerated here; the watch picks the
    secret up as soon as it appears.
    """
    logger.info("Initializing ClusterDetector resources")
    try:
        detector.reconcile()
    except CredentialError as e:
        logger.warning(f"Skipping initial cluster detection: {e}")
        return False
    return True


def build_controllers(
    custom_objects: client.CustomObjectsApi,
    core_api: client.CoreV1Api,
    detector: ClusterDetector,
    replicator: Replicator,
) -> List[Controller]:
    return [
        cluster_detector_controller(
            detector,
            custom_objects,
            core_api,
            workers=1,
            resync_period=RESYNC_PERIOD,
        ),
        replicator_controller(
            replicator,
            custom_objects,
            core_api,
            client.AppsV1Api(),
            client.NetworkingV1Api(),
            workers=WORKER_COUNT,
            resync_period=RESYNC_PERIOD,
        ),
    ]


def start_controllers(controllers: List[Controller]):
    for controller in controllers:
        controller.start()


def stop_controllers(controllers: List[Controller]):
    for controller in controllers:
        if controller.started:
            controller.stop()


# -----------------------------
# HTTP Server for Metrics and Probes
# -----------------------------


class PlumberHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics plus liveness and readiness probes."""

    def _send(self, status: int, body: bytes, content_type: str = "text/plain"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                self._send(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._send(500, b"Error generating metrics")

        elif path == "/healthz":
            self._send(200, b"OK")

        elif path == "/readyz":
            ready = ready_event.is_set()
            response = {
                "status": "ready" if ready else "not_ready",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self._send(200 if ready else 503, json.dumps(response).encode(), "application/json")

        else:
            self._send(404, b"Not Found")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server(port: int = METRICS_PORT) -> HTTPServer:
    server = HTTPServer(("0.0.0.0", port), PlumberHTTPHandler)
    thread = threading.Thread(target=server.serve_forever, name="http", daemon=True)
    thread.start()
    logger.info(f"HTTP server started on port {port} (metrics: /metrics, probes: /healthz /readyz)")
    return server


# -----------------------------
# Main
# -----------------------------


def main() -> int:
    logger.info(f"Starting plumber operator {VERSION} for pod {POD_NAME} in namespace {OPERATOR_NAMESPACE}")

    configuration = load_kube_configuration()
    metrics.info_metric.info(
        {
            "pod_name": POD_NAME,
            "namespace": OPERATOR_NAMESPACE,
            "version": VERSION,
            "field_manager": FIELD_MANAGER,
            "leader_elect": str(LEADER_ELECT).lower(),
        }
    )

    custom_objects = client.CustomObjectsApi()
    core_api = client.CoreV1Api()
    primary = primary_client(REQUEST_TIMEOUT)
    fanout = CredentialFanout(core_api, REQUEST_TIMEOUT)

    ensure_primary_credentials(primary, configuration)

    detector = ClusterDetector(custom_objects, fanout)
    initial_detection(detector)

    replicator = Replicator(custom_objects, fanout, primary, CertificateIssuer())
    controllers = build_controllers(custom_objects, core_api, detector, replicator)

    server = start_metrics_server()
    ready_event.set()

    try:
        if LEADER_ELECT:
            elector = LeaderElector(
                client.CoordinationV1Api(),
                LEASE_NAME,
                OPERATOR_NAMESPACE,
                POD_NAME,
                LEASE_DURATION,
            )

            def on_stopped_leading():
                # Controllers cannot be resumed once stopped; exit and let the pod restart
                stop_controllers(controllers)
                shutdown_event.set()

            elector.run(lambda: start_controllers(controllers), on_stopped_leading, shutdown_event)
        else:
            start_controllers(controllers)
            shutdown_event.wait()
    finally:
        stop_controllers(controllers)
        server.shutdown()
        logger.info("Plumber operator shutdown complete")

    return 0


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    shutdown_event.set()


def run():
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    sys.exit(main())


if __name__ == "__main__":
    run()
