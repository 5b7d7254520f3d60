#!/usr/bin/env python3
# tests/test_controllers.py
"""
Tests for controller plumbing: event-to-key mapping, watch restarts,
worker error handling and controller wiring.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kubernetes.client import V1ConfigMap, V1ObjectMeta, V1OwnerReference
from kubernetes.client.rest import ApiException

import controllers
from controllers import (
    CATALOG_KEY,
    Controller,
    SpecChangeFilter,
    catalog_key,
    cluster_detector_controller,
    object_name_key,
    replicator_controller,
    replicator_owner_keys,
)


def owned_config_map(kind="Replicator", api_version="plumber.io/v1"):
    return V1ConfigMap(
        metadata=V1ObjectMeta(
            name="conf",
            namespace="demo",
            owner_references=[V1OwnerReference(api_version=api_version, kind=kind, name="sample", uid="u1")],
        )
    )


class TestKeyMappers(unittest.TestCase):
    def test_object_name_key(self):
        self.assertEqual(object_name_key("ADDED", {"metadata": {"name": "sample"}}), ["sample"])
        self.assertEqual(object_name_key("ADDED", {"metadata": {}}), [])

    def test_catalog_key(self):
        self.assertEqual(catalog_key("MODIFIED", object()), [CATALOG_KEY])

    def test_owner_keys_from_model(self):
        self.assertEqual(replicator_owner_keys("MODIFIED", owned_config_map()), ["sample"])

    def test_owner_keys_from_dict(self):
        obj = {
            "metadata": {
                "ownerReferences": [
                    {"apiVersion": "plumber.io/v1", "kind": "Replicator", "name": "sample", "uid": "u1"}
                ]
            }
        }
        self.assertEqual(replicator_owner_keys("DELETED", obj), ["sample"])

    def test_foreign_owner_is_ignored(self):
        self.assertEqual(replicator_owner_keys("ADDED", owned_config_map(kind="ReplicaSet", api_version="apps/v1")), [])
        self.assertEqual(replicator_owner_keys("ADDED", owned_config_map(api_version="other.io/v1")), [])

    def test_unowned_object(self):
        self.assertEqual(replicator_owner_keys("ADDED", V1ConfigMap(metadata=V1ObjectMeta(name="x"))), [])


class TestSpecChangeFilter(unittest.TestCase):
    def detector(self, generation=1, labels=None, status=None):
        return {
            "metadata": {
                "name": "edge.edge-admin",
                "generation": generation,
                "labels": labels or {"app.kubernetes.io/role": "secondary"},
            },
            "status": status or {},
        }

    def setUp(self):
        self.mapper = SpecChangeFilter(catalog_key)

    def test_status_only_update_is_dropped(self):
        self.assertEqual(self.mapper("ADDED", self.detector()), [CATALOG_KEY])
        self.assertEqual(
            self.mapper("MODIFIED", self.detector(status={"clusterStatus": "UNKNOWN", "reason": "refused"})), []
        )

    def test_spec_change_is_kept(self):
        self.mapper("ADDED", self.detector())
        self.assertEqual(self.mapper("MODIFIED", self.detector(generation=2)), [CATALOG_KEY])

    def test_label_change_is_kept(self):
        self.mapper("ADDED", self.detector())
        self.assertEqual(
            self.mapper("MODIFIED", self.detector(labels={"app.kubernetes.io/role": "primary"})), [CATALOG_KEY]
        )

    def test_deletion_and_readd(self):
        self.mapper("ADDED", self.detector())
        self.assertEqual(self.mapper("DELETED", self.detector()), [CATALOG_KEY])
        self.assertEqual(self.mapper("ADDED", self.detector()), [CATALOG_KEY])


class TestController(unittest.TestCase):
    def setUp(self):
        self.reconcile = Mock(return_value=False)
        self.controller = Controller("test", self.reconcile, lambda: ["a", "b"])
        self.addCleanup(self.controller.queue.shutdown)

    def test_successful_pass_forgets_key(self):
        self.controller.queue.add("a")
        self.controller.queue.add_rate_limited = Mock()

        self.assertTrue(self.controller.process_next(timeout=1))

        self.reconcile.assert_called_once_with("a")
        self.controller.queue.add_rate_limited.assert_not_called()
        self.assertEqual(len(self.controller.queue), 0)

    def test_failed_pass_is_rate_limited(self):
        self.reconcile.side_effect = RuntimeError("boom")
        self.controller.queue.add_rate_limited = Mock(return_value=0.5)
        self.controller.queue.add("a")

        self.assertTrue(self.controller.process_next(timeout=1))

        self.controller.queue.add_rate_limited.assert_called_once_with("a")

    def test_requeue_request_readds_key(self):
        self.reconcile.return_value = True
        self.controller.queue.add("a")

        self.controller.process_next(timeout=1)

        self.assertEqual(len(self.controller.queue), 1)

    def test_process_next_after_shutdown(self):
        self.controller.queue.shutdown()
        self.assertFalse(self.controller.process_next(timeout=0.01))

    def test_resync_adds_every_key(self):
        self.controller.resync()
        self.assertEqual(len(self.controller.queue), 2)

    @patch("controllers.watch.Watch")
    def test_watch_maps_events_to_keys(self, mock_watch_cls):
        source = controllers.WatchSource("things", Mock(), object_name_key, namespace="demo")
        controller = self.controller

        def stream(list_func, **kwargs):
            self.assertEqual(kwargs["namespace"], "demo")
            self.assertEqual(kwargs["timeout_seconds"], controllers.WATCH_TIMEOUT)
            yield {"type": "ADDED", "object": {"metadata": {"name": "x"}}}
            yield {"type": "ERROR", "object": {"metadata": {"name": "ignored"}}}
            yield {"type": "MODIFIED", "object": {"metadata": {"name": "y"}}}
            controller._shutdown_event.set()

        mock_watch_cls.return_value.stream.side_effect = stream

        controller._watch_loop(source)

        self.assertEqual(controller.queue.get(timeout=1), "x")
        self.assertEqual(controller.queue.get(timeout=1), "y")
        self.assertEqual(len(controller.queue), 0)

    @patch("controllers.watch.Watch")
    def test_watch_restarts_on_expired_resource_version(self, mock_watch_cls):
        source = controllers.WatchSource("things", Mock(), object_name_key)
        controller = self.controller
        calls = []

        def stream(list_func, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ApiException(status=410, reason="Gone")
            yield {"type": "ADDED", "object": {"metadata": {"name": "x"}}}
            controller._shutdown_event.set()

        mock_watch_cls.return_value.stream.side_effect = stream

        controller._watch_loop(source)

        self.assertEqual(len(calls), 2)
        self.assertEqual(controller.queue.get(timeout=1), "x")


class TestWiring(unittest.TestCase):
    def test_cluster_detector_controller(self):
        custom_api, core_api = Mock(), Mock()
        detector = Mock()

        controller = cluster_detector_controller(detector, custom_api, core_api, namespace="plumber-system")
        self.addCleanup(controller.queue.shutdown)

        self.assertEqual([s.name for s in controller.sources], ["kubeconfig-secret", "clusterdetectors"])
        secret_source = controller.sources[0]
        self.assertIs(secret_source.list_func, core_api.list_namespaced_secret)
        self.assertIsInstance(controller.sources[1].mapper, SpecChangeFilter)
        self.assertEqual(secret_source.kwargs["field_selector"], "metadata.name=config")
        self.assertEqual(list(controller.list_keys()), [CATALOG_KEY])
        self.assertIs(controller.reconcile, detector.reconcile)

    def test_replicator_controller(self):
        custom_api = Mock()
        custom_api.list_cluster_custom_object.return_value = {
            "items": [{"metadata": {"name": "one"}}, {"metadata": {"name": "two"}}]
        }
        core_api, apps_api, networking_api = Mock(), Mock(), Mock()

        controller = replicator_controller(Mock(), custom_api, core_api, apps_api, networking_api)
        self.addCleanup(controller.queue.shutdown)

        self.assertEqual(
            [s.name for s in controller.sources],
            ["replicators", "configmaps", "deployments", "services", "ingresses"],
        )
        self.assertIs(controller.sources[2].list_func, apps_api.list_deployment_for_all_namespaces)
        self.assertEqual(controller.list_keys(), ["one", "two"])


if __name__ == "__main__":
    unittest.main()
