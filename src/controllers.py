#!/usr/bin/env python3
# src/controllers.py
"""
Controller plumbing: watch streams feed a work queue, workers run reconcile.

A Controller owns one WorkQueue, any number of watch threads (each one maps
events to reconcile keys), a resync thread that re-adds every known key on a
timer, and a pool of worker threads. A failed pass is requeued with backoff;
a pass that asks for a requeue is re-added immediately.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

import metrics
from constants import (
    CLUSTER_DETECTOR_PLURAL,
    CRD_GROUP,
    CRD_VERSION,
    KUBECONFIG_SECRET_NAME,
    KUBECONFIG_SECRET_NAMESPACE,
    OPERATOR_NAMESPACE,
    REPLICATOR_KIND,
    REPLICATOR_PLURAL,
)
from workqueue import WorkQueue, calculate_jittered_sleep

logger = logging.getLogger("plumber-operator.controller")

CATALOG_KEY = "catalog"
WATCH_TIMEOUT = 30

KeyMapper = Callable[[str, Any], Iterable[str]]


def _field(obj: Any, *path: str) -> Any:
    """Read a nested field from either a dict (custom objects) or a typed model."""
    for name in path:
        if obj is None:
            return None
        if isinstance(obj, dict):
            obj = obj.get(_camel(name))
        else:
            obj = getattr(obj, name, None)
    return obj


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def object_name_key(event_type: str, obj: Any) -> List[str]:
    name = _field(obj, "metadata", "name")
    return [name] if name else []


def catalog_key(event_type: str, obj: Any) -> List[str]:
    return [CATALOG_KEY]


def replicator_owner_keys(event_type: str, obj: Any) -> List[str]:
    """Keys of the Replicators that own ``obj``."""
    keys = []
    for ref in _field(obj, "metadata", "owner_references") or []:
        if _field(ref, "kind") != REPLICATOR_KIND:
            continue
        if not str(_field(ref, "api_version") or "").startswith(f"{CRD_GROUP}/"):
            continue
        keys.append(_field(ref, "name"))
    return keys


class SpecChangeFilter:
    """Wraps a mapper and drops MODIFIED events that changed neither spec nor labels.

    Status subresource writes do not bump metadata.generation, so a controller
    watching objects whose status it writes does not requeue itself.
    """

    def __init__(self, mapper: KeyMapper):
        self.mapper = mapper
        self._seen: Dict[str, Any] = {}

    def __call__(self, event_type: str, obj: Any) -> Iterable[str]:
        name = _field(obj, "metadata", "name")
        if event_type == "DELETED":
            self._seen.pop(name, None)
            return self.mapper(event_type, obj)

        labels = _field(obj, "metadata", "labels") or {}
        fingerprint = (_field(obj, "metadata", "generation"), sorted(labels.items()))
        previous = self._seen.get(name)
        self._seen[name] = fingerprint
        if event_type == "MODIFIED" and previous == fingerprint:
            return []
        return self.mapper(event_type, obj)


class WatchSource:
    """One list function plus the kwargs it is streamed with."""

    def __init__(self, name: str, list_func: Callable, mapper: KeyMapper, **kwargs):
        self.name = name
        self.list_func = list_func
        self.mapper = mapper
        self.kwargs = kwargs


class Controller:
    """Runs reconcile for keys produced by watches and periodic resyncs."""

    def __init__(
        self,
        name: str,
        reconcile: Callable[[str], bool],
        list_keys: Callable[[], Iterable[str]],
        workers: int = 2,
        resync_period: int = 30,
    ):
        self.name = name
        self.reconcile = reconcile
        self.list_keys = list_keys
        self.workers = workers
        self.resync_period = resync_period
        self.queue = WorkQueue(name)
        self.sources: List[WatchSource] = []
        self._threads: List[threading.Thread] = []
        self._shutdown_event = threading.Event()
        self.started = False

    def watch(self, name: str, list_func: Callable, mapper: KeyMapper, **kwargs) -> "Controller":
        self.sources.append(WatchSource(name, list_func, mapper, **kwargs))
        return self

    def start(self):
        self._shutdown_event.clear()
        for source in self.sources:
            self._spawn(f"{self.name}-watch-{source.name}", self._watch_loop, source)
        self._spawn(f"{self.name}-resync", self._resync_loop)
        for i in range(self.workers):
            self._spawn(f"{self.name}-worker-{i}", self._worker_loop)
        self.started = True
        logger.info(
            f"[{self.name}] Controller started: {len(self.sources)} watches, {self.workers} workers"
        )

    def stop(self, timeout: float = 5):
        logger.info(f"[{self.name}] Stopping controller")
        self._shutdown_event.set()
        self.queue.shutdown()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []
        self.started = False

    def _spawn(self, name: str, target: Callable, *args):
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    # -----------------------------
    # Event sources
    # -----------------------------

    def _watch_loop(self, source: WatchSource):
        logger.info(f"[{self.name}] Starting watch on {source.name}")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(source.list_func, timeout_seconds=WATCH_TIMEOUT, **source.kwargs):
                    if self._shutdown_event.is_set():
                        break
                    if event["type"] == "ERROR":
                        continue
                    for key in source.mapper(event["type"], event["object"]):
                        self.queue.add(key)
                w.stop()

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"[{self.name}] Watch on {source.name} expired, restarting")
                    continue
                logger.error(f"[{self.name}] Watch error on {source.name}: {e}")
                self._shutdown_event.wait(5)

            except Exception as e:
                logger.error(f"[{self.name}] Unexpected watch error on {source.name}: {e}")
                self._shutdown_event.wait(5)

        logger.info(f"[{self.name}] Watch on {source.name} stopped")

    def resync(self):
        for key in self.list_keys():
            self.queue.add(key)

    def _resync_loop(self):
        while not self._shutdown_event.is_set():
            try:
                self.resync()
            except Exception as e:
                logger.error(f"[{self.name}] Resync failed: {e}")
            self._shutdown_event.wait(calculate_jittered_sleep(self.resync_period))

    # -----------------------------
    # Workers
    # -----------------------------

    def _worker_loop(self):
        while self.process_next():
            pass

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one key. Returns False once the queue is shut down."""
        key = self.queue.get(timeout)
        if key is None:
            return not self.queue.shutting_down
        try:
            self._reconcile_key(key)
        finally:
            self.queue.done(key)
        return True

    def _reconcile_key(self, key: str):
        start = time.monotonic()
        try:
            requeue = self.reconcile(key)
        except Exception as e:
            metrics.reconcile_total.labels(controller=self.name, result="error").inc()
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"[{self.name}] Reconcile {key} failed (attempt {self.queue.num_requeues(key)}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            return

        self.queue.forget(key)
        if requeue:
            metrics.reconcile_total.labels(controller=self.name, result="requeue").inc()
            self.queue.add(key)
        else:
            metrics.reconcile_total.labels(controller=self.name, result="success").inc()
        logger.debug(f"[{self.name}] Reconciled {key} in {time.monotonic() - start:.2f}s")


# -----------------------------
# Wiring
# -----------------------------


def list_replicator_names(custom_objects_api: client.CustomObjectsApi) -> List[str]:
    result: Dict[str, Any] = custom_objects_api.list_cluster_custom_object(
        group=CRD_GROUP, version=CRD_VERSION, plural=REPLICATOR_PLURAL
    )
    return [item["metadata"]["name"] for item in result.get("items", [])]


def cluster_detector_controller(
    detector,
    custom_objects_api: client.CustomObjectsApi,
    core_api: client.CoreV1Api,
    workers: int = 1,
    resync_period: int = 30,
    namespace: str = OPERATOR_NAMESPACE,
) -> Controller:
    controller = Controller(
        "clusterdetector",
        detector.reconcile,
        lambda: [CATALOG_KEY],
        workers=workers,
        resync_period=resync_period,
    )
    controller.watch(
        "kubeconfig-secret",
        core_api.list_namespaced_secret,
        catalog_key,
        namespace=KUBECONFIG_SECRET_NAMESPACE,
        field_selector=f"metadata.name={KUBECONFIG_SECRET_NAME}",
    )
    controller.watch(
        "clusterdetectors",
        custom_objects_api.list_namespaced_custom_object,
        SpecChangeFilter(catalog_key),
        group=CRD_GROUP,
        version=CRD_VERSION,
        namespace=namespace,
        plural=CLUSTER_DETECTOR_PLURAL,
    )
    return controller


def replicator_controller(
    replicator,
    custom_objects_api: client.CustomObjectsApi,
    core_api: client.CoreV1Api,
    apps_api: client.AppsV1Api,
    networking_api: client.NetworkingV1Api,
    workers: int = 2,
    resync_period: int = 30,
) -> Controller:
    controller = Controller(
        "replicator",
        replicator.reconcile,
        lambda: list_replicator_names(custom_objects_api),
        workers=workers,
        resync_period=resync_period,
    )
    controller.watch(
        "replicators",
        custom_objects_api.list_cluster_custom_object,
        object_name_key,
        group=CRD_GROUP,
        version=CRD_VERSION,
        plural=REPLICATOR_PLURAL,
    )
    controller.watch("configmaps", core_api.list_config_map_for_all_namespaces, replicator_owner_keys)
    controller.watch("deployments", apps_api.list_deployment_for_all_namespaces, replicator_owner_keys)
    controller.watch("services", core_api.list_service_for_all_namespaces, replicator_owner_keys)
    controller.watch("ingresses", networking_api.list_ingress_for_all_namespaces, replicator_owner_keys)
    return controller
