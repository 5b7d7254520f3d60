#!/usr/bin/env python3
# tests/test_plumber.py
"""
Tests for the operator entrypoint: probes, metrics endpoint and startup helpers.
"""

import importlib
import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import requests
from kubernetes import config

import plumber
from credentials import CredentialError


class TestHTTPEndpoints(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.server = plumber.start_metrics_server(0)
        cls.base_url = f"http://127.0.0.1:{cls.server.server_address[1]}"

    @classmethod
    def tearDownClass(cls):
        cls.server.shutdown()
        cls.server.server_close()

    def tearDown(self):
        plumber.ready_event.clear()

    def test_healthz(self):
        response = requests.get(f"{self.base_url}/healthz", timeout=5)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "OK")

    def test_readyz_before_and_after_bootstrap(self):
        response = requests.get(f"{self.base_url}/readyz", timeout=5)
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "not_ready")

        plumber.ready_event.set()
        response = requests.get(f"{self.base_url}/readyz", timeout=5)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")

    def test_metrics(self):
        plumber.metrics.reconcile_total.labels(controller="replicator", result="success").inc()

        response = requests.get(f"{self.base_url}/metrics", timeout=5)

        self.assertEqual(response.status_code, 200)
        self.assertIn("plumber_reconcile_total", response.text)

    def test_unknown_path(self):
        response = requests.get(f"{self.base_url}/nope", timeout=5)
        self.assertEqual(response.status_code, 404)


class TestStartupHelpers(unittest.TestCase):
    def test_initial_detection(self):
        detector = Mock()
        self.assertTrue(plumber.initial_detection(detector))
        detector.reconcile.assert_called_once_with()

    def test_initial_detection_without_secret(self):
        detector = Mock()
        detector.reconcile.side_effect = CredentialError("secret kubeconfig/config not found")
        self.assertFalse(plumber.initial_detection(detector))

    @patch("plumber.config.load_kube_config")
    @patch("plumber.config.load_incluster_config")
    def test_kube_configuration_falls_back_to_kubeconfig(self, mock_incluster, mock_kubeconfig):
        mock_incluster.side_effect = config.ConfigException("not in cluster")

        configuration = plumber.load_kube_configuration()

        mock_kubeconfig.assert_called_once_with()
        self.assertIsNotNone(configuration)

    def test_stop_controllers_skips_idle_ones(self):
        running, idle = Mock(started=True), Mock(started=False)

        plumber.stop_controllers([running, idle])

        running.stop.assert_called_once_with()
        idle.stop.assert_not_called()


class TestLayout(unittest.TestCase):
    """The operator runs as flat modules from src/ (``python src/plumber.py``)."""

    MODULES = (
        "cluster_detector", "constants", "controllers", "credentials", "kubeclient", "leader",
        "metrics", "pki", "plumber", "replicator", "resources", "workqueue",
    )

    def test_modules_resolve_from_src(self):
        src = os.path.realpath(os.path.join(os.path.dirname(__file__), "..", "src"))
        for name in self.MODULES:
            module = importlib.import_module(name)
            self.assertEqual(os.path.dirname(os.path.realpath(module.__file__)), src, name)

    def test_entrypoint(self):
        self.assertTrue(callable(plumber.run))


if __name__ == "__main__":
    unittest.main()
